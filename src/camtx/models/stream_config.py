# pyright: strict
"""Stream configuration model for the camera transmission pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000
DEFAULT_ENCODER = "v4l2h264enc"
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
DEFAULT_FRAMERATE = 30

MIN_WIDTH, MAX_WIDTH = 320, 4608
MIN_HEIGHT, MAX_HEIGHT = 240, 2592
MIN_FRAMERATE, MAX_FRAMERATE = 1, 120
MIN_LENS_POSITION, MAX_LENS_POSITION = 0.0, 32.0

AUTO_DETECT = "auto-detect"

SUPPORTED_ENCODERS: tuple[str, ...] = (
    "v4l2h264enc",  # Raspberry Pi hardware encoder
    "omxh264enc",  # OpenMAX, legacy Pi firmware
    "x264enc",  # software
    "nvh264enc",  # NVIDIA NVENC
    "vaapih264enc",  # Intel VAAPI
    "qsvh264enc",  # Intel Quick Sync
    "vtenc_h264",  # macOS VideoToolbox
    "mfh264enc",  # Windows Media Foundation
)


class CaptureSource(Enum):
    """Capture backend used at the head of the pipeline."""

    LIBCAMERA = "libcamera"
    """Camera stack backend (libcamerasrc), addressed by camera name."""

    V4L2 = "v4l2"
    """Video4Linux device backend (v4l2src), addressed by device path."""


def _check_encoder(value: str) -> str:
    if value not in SUPPORTED_ENCODERS:
        error_msg = f"unsupported encoder, expected one of: {', '.join(SUPPORTED_ENCODERS)}"
        raise ValueError(error_msg)
    return value


Host = Annotated[str, Field(strict=True, min_length=1, max_length=253)]
Port = Annotated[int, Field(strict=True, ge=1, le=65535)]
Device = Annotated[str, Field(strict=True, max_length=255)]
EncoderName = Annotated[str, Field(strict=True), AfterValidator(_check_encoder)]
Width = Annotated[int, Field(strict=True, ge=MIN_WIDTH, le=MAX_WIDTH)]
Height = Annotated[int, Field(strict=True, ge=MIN_HEIGHT, le=MAX_HEIGHT)]
Framerate = Annotated[int, Field(strict=True, ge=MIN_FRAMERATE, le=MAX_FRAMERATE)]
Autofocus = Annotated[bool, Field(strict=True)]
LensPosition = Annotated[
    float, Field(strict=True, ge=MIN_LENS_POSITION, le=MAX_LENS_POSITION)
]


class StreamConfig(BaseModel):
    """Desired configuration of the transmission pipeline.

    Instances are immutable snapshots. Updates produce a new instance through
    ``model_copy(update=...)`` after each field has been validated on its own,
    so a snapshot is always internally consistent.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: Host = DEFAULT_HOST
    """Destination host of the RTP/UDP stream."""

    port: Port = DEFAULT_PORT
    """Destination UDP port."""

    source: CaptureSource = CaptureSource.LIBCAMERA
    """Capture backend selector."""

    device: Device = ""
    """Camera name or device path, empty for auto-detection."""

    encoder: EncoderName = DEFAULT_ENCODER
    """Requested H.264 encoder element."""

    width: Width = DEFAULT_WIDTH
    height: Height = DEFAULT_HEIGHT
    framerate: Framerate = DEFAULT_FRAMERATE

    autofocus: Autofocus = True
    """Continuous autofocus; when disabled ``lens_position`` is applied."""

    lens_position: LensPosition = 0.0
    """Manual lens position in dioptres."""

    @property
    def auto_detect_device(self) -> bool:
        """Whether the capture device should be picked by the backend."""
        return not self.device or self.device == AUTO_DETECT

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON document for this configuration."""
        return self.model_dump(mode="json")


# Per-field types used to validate partial updates one field at a time.
FIELD_TYPES: dict[str, Any] = {
    "host": Host,
    "port": Port,
    "source": CaptureSource,
    "device": Device,
    "encoder": EncoderName,
    "width": Width,
    "height": Height,
    "framerate": Framerate,
    "autofocus": Autofocus,
    "lens_position": LensPosition,
}

# Older clients and persisted files call the device field "camera".
FIELD_ALIASES: dict[str, str] = {"camera": "device"}

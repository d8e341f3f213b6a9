# pyright: strict
"""Encoder tuning and resolution tables shared by pipeline backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Property values are strings so they can be applied with Gst.util_set_object_arg,
# which parses enum nicks and numbers alike.
ENCODER_TUNING: dict[str, dict[str, str]] = {
    "x264enc": {
        "tune": "zerolatency",
        "speed-preset": "superfast",
        "bitrate": "2048",
        "threads": "1",
        "key-int-max": "30",
    },
    "omxh264enc": {
        "target-bitrate": "2048000",
        "control-rate": "variable",
    },
    "nvh264enc": {
        "bitrate": "2048",
        "gop-size": "30",
        "preset": "1",
    },
    "vaapih264enc": {
        "bitrate": "2048",
        "keyframe-period": "30",
    },
}

# v4l2h264enc takes its settings as a GstStructure on "extra-controls".
V4L2_EXTRA_CONTROLS = "controls,repeat_sequence_header=(boolean)true"

H264_LEVEL = "4"


@dataclass(frozen=True)
class Resolution:
    """A capture mode a device can deliver."""

    width: int
    height: int
    max_framerate: int
    format: str | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "width": self.width,
            "height": self.height,
            "max_framerate": self.max_framerate,
        }
        if self.format is not None:
            data["format"] = self.format
        if self.description is not None:
            data["description"] = self.description
        return data


# Modes offered when a source only advertises width/height ranges.
COMMON_RESOLUTIONS: tuple[Resolution, ...] = (
    Resolution(640, 480, 60),
    Resolution(1280, 720, 60),
    Resolution(1920, 1080, 30),
    Resolution(2304, 1296, 25),
    Resolution(4608, 2592, 10),
)

FALLBACK_RESOLUTIONS: tuple[Resolution, ...] = (
    Resolution(640, 480, 30, description="VGA (basic fallback)"),
    Resolution(1280, 720, 30, description="HD (basic fallback)"),
    Resolution(1920, 1080, 15, description="Full HD (basic fallback)"),
)


def resolutions_within(
    min_width: int,
    max_width: int,
    min_height: int,
    max_height: int,
) -> list[Resolution]:
    """Return the common modes that fit inside the advertised ranges."""
    return [
        Resolution(r.width, r.height, r.max_framerate, format="range-tested")
        for r in COMMON_RESOLUTIONS
        if min_width <= r.width <= max_width and min_height <= r.height <= max_height
    ]


def fallback_resolutions() -> list[dict[str, Any]]:
    return [r.to_dict() for r in FALLBACK_RESOLUTIONS]


def raw_caps(width: int, height: int, framerate: int) -> str:
    """Caps string for the capture filter."""
    return f"video/x-raw,width={width},height={height},framerate={framerate}/1"


def h264_caps(level: str = H264_LEVEL) -> str:
    """Caps string for the filter after the encoder."""
    return f"video/x-h264,level=(string){level}"

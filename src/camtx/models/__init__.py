"""Models package for the camera transmitter."""

from .config import AppConfig
from .stream_config import SUPPORTED_ENCODERS, CaptureSource, StreamConfig

__all__ = [
    "SUPPORTED_ENCODERS",
    "AppConfig",
    "CaptureSource",
    "StreamConfig",
]

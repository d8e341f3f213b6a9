"""Media pipeline backends.

The GStreamer backend lives in ``camtx.backends.gstreamer`` and needs PyGObject
(the ``gstreamer`` extra); it is imported only by the application entry point.
"""

from .capabilities import (
    COMMON_RESOLUTIONS,
    ENCODER_TUNING,
    FALLBACK_RESOLUTIONS,
    Resolution,
    resolutions_within,
)

__all__ = [
    "COMMON_RESOLUTIONS",
    "ENCODER_TUNING",
    "FALLBACK_RESOLUTIONS",
    "Resolution",
    "resolutions_within",
]

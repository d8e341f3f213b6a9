"""camtx - camera to RTP/UDP transmitter with a live HTTP control API."""

__version__ = "0.1.0"

"""API package for the camera transmitter web server endpoints."""

from .config_router import create_config_router
from .devices_router import create_devices_router
from .health_router import create_health_router
from .stats_router import create_stats_router

__all__ = [
    "create_config_router",
    "create_devices_router",
    "create_health_router",
    "create_stats_router",
]

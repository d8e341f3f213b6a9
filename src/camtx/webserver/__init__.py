"""Web server package for the camtx control API."""

from .server import WebServer

__all__ = ["WebServer"]

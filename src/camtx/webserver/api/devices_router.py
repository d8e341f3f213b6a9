"""Capture device and encoder discovery endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from camtx.controller import ControlAPI


def create_devices_router(control_api: ControlAPI) -> APIRouter:
    """Create the discovery router.

    Probing touches the capture hardware, so every handler is a plain function
    and runs on the thread pool.
    """
    router = APIRouter()

    @router.get("/devices")
    def list_devices() -> JSONResponse:  # type: ignore[no-untyped-def]
        return JSONResponse(content=control_api.list_devices())

    # Device paths such as /dev/video0 contain slashes.
    @router.get("/devices/{name:path}")
    def describe_device(name: str) -> JSONResponse:  # type: ignore[no-untyped-def]
        return JSONResponse(content=control_api.describe_device(name))

    @router.get("/encoders")
    def list_encoders() -> JSONResponse:  # type: ignore[no-untyped-def]
        return JSONResponse(content=control_api.list_encoders())

    @router.get("/get")
    def discover() -> JSONResponse:  # type: ignore[no-untyped-def]
        return JSONResponse(content=control_api.discover())

    @router.get("/get/{name:path}")
    def describe_camera(name: str) -> JSONResponse:  # type: ignore[no-untyped-def]
        return JSONResponse(content=control_api.describe_camera(name))

    return router

"""Configuration API endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

if TYPE_CHECKING:
    from camtx.controller import ControlAPI


def create_config_router(control_api: ControlAPI) -> APIRouter:
    """Create the configuration router.

    Args:
        control_api: Controller facade owning the configuration store

    Returns:
        APIRouter with GET and POST ``/config``

    """
    router = APIRouter()

    @router.get("/config")
    def get_config() -> JSONResponse:  # type: ignore[no-untyped-def]
        """Return the full desired configuration."""
        return JSONResponse(content=control_api.get_config())

    @router.post("/config")
    async def update_config(request: Request) -> JSONResponse:  # type: ignore[no-untyped-def]
        """Apply a partial configuration update.

        The raw body is parsed by the controller so malformed JSON gets the
        same ``{"error": "Invalid JSON"}`` answer as a non-object document.
        Reconciliation takes the controller lock, so it runs off the event loop.
        """
        body = await request.body()
        status_code, document = await run_in_threadpool(control_api.update_config, body)
        return JSONResponse(content=document, status_code=status_code)

    return router

"""Health check API endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from camtx.controller import ControlAPI


def create_health_router(control_api: ControlAPI) -> APIRouter:
    """Create health check router.

    Args:
        control_api: Controller facade supplying the supervisor status

    Returns:
        APIRouter configured with the health endpoint

    """
    router = APIRouter()

    @router.get("/health")
    def health_check() -> JSONResponse:  # type: ignore[no-untyped-def]
        """Report liveness and the pipeline state.

        Pipeline failures show up here as ``state`` and ``last_error``; the
        endpoint itself always answers 200 while the process is up.
        """
        return JSONResponse(content=control_api.health())

    return router

"""Stream statistics API endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from camtx.controller import ControlAPI


def create_stats_router(control_api: ControlAPI) -> APIRouter:
    """Create the statistics router."""
    router = APIRouter()

    @router.get("/stats")
    def get_stats() -> JSONResponse:  # type: ignore[no-untyped-def]
        """Return byte and frame counters with derived rates since the last build."""
        return JSONResponse(content=control_api.get_stats())

    return router

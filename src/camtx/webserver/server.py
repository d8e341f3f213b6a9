"""HTTP control server for the camera transmitter."""

from __future__ import annotations

import asyncio
import time
from asyncio import CancelledError
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import (
    create_config_router,
    create_devices_router,
    create_health_router,
    create_stats_router,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from camtx.controller import ControlAPI

NOT_FOUND = {"error": "Not Found"}


class WebServer:
    """FastAPI server exposing the control API over HTTP/JSON.

    Routes are thin adapters over ``ControlAPI``. Unknown paths and methods both
    answer ``404 {"error": "Not Found"}``, and the interactive docs are disabled
    so they do not shadow that contract.
    """

    def __init__(self, control_api: ControlAPI) -> None:
        """Initialize the web server.

        Args:
            control_api: Controller facade the routes delegate to.

        """
        self._start_time = time.time()
        self.control_api = control_api
        self.app = self._create_app()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def _lifespan_context(self, _app: FastAPI) -> AsyncGenerator[None]:
        """Manage application lifespan events."""
        logger.info("Starting control web server")
        yield
        logger.info("Shutting down control web server")

    def _create_app(self) -> FastAPI:
        """Create and configure the FastAPI application."""
        app = FastAPI(
            title="camtx",
            description="Camera RTP/UDP transmitter control API",
            version="0.1.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=self._lifespan_context,
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

        app.add_exception_handler(StarletteHTTPException, self._http_error_handler)  # type: ignore[arg-type]

        app.include_router(create_health_router(self.control_api), tags=["health"])
        app.include_router(create_config_router(self.control_api), tags=["config"])
        app.include_router(create_stats_router(self.control_api), tags=["stats"])
        app.include_router(create_devices_router(self.control_api), tags=["devices"])

        return app

    @staticmethod
    async def _http_error_handler(
        _request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code in (404, 405):
            return JSONResponse(content=NOT_FOUND, status_code=404)
        return JSONResponse(content={"error": str(exc.detail)}, status_code=exc.status_code)

    async def start(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8888,
        log_level: str = "info",
        *,
        access_log: bool = False,
    ) -> None:
        """Start uvicorn in a background task.

        Args:
            host: Network interface to bind to.
            port: TCP port to listen on.
            log_level: Uvicorn logging verbosity.
            access_log: Whether to log every request.

        """
        try:
            uvicorn_config = uvicorn.Config(
                app=self.app,
                host=host,
                port=port,
                log_level=log_level.lower(),
                access_log=access_log,
                loop="asyncio",
            )

            self.server = uvicorn.Server(uvicorn_config)
            self.server_task = asyncio.create_task(self.server.serve())

            logger.info("Web server started", host=host, port=port)

        except (OSError, RuntimeError, ValueError) as e:
            logger.error("Failed to start web server", error=str(e), error_type=type(e).__name__)

    async def stop(self, *, shutdown_timeout: float = 5.0) -> None:
        """Stop the web server, waiting at most ``shutdown_timeout`` seconds."""
        if self.server_task and not self.server_task.done():
            try:
                if self.server:
                    self.server.should_exit = True

                self.server_task.cancel()

                with suppress(CancelledError):
                    try:
                        await asyncio.wait_for(self.server_task, timeout=shutdown_timeout)
                    except TimeoutError:
                        logger.warning("Web server shutdown timed out")

                logger.info("Web server stopped")

            except Exception:  # noqa: BLE001
                logger.exception("Error stopping web server")

    @property
    def is_running(self) -> bool:
        return (
            self.server_task is not None and not self.server_task.done() and self.server is not None
        )

    @property
    def uptime(self) -> float:
        """Seconds since the server object was created."""
        return time.time() - self._start_time

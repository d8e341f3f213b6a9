"""camtx - camera to RTP/UDP transmitter with a live HTTP control API."""

import asyncio
import signal
import sys
import time
from collections.abc import Awaitable, Callable
from types import FrameType, TracebackType

from dotenv import load_dotenv
from loguru import logger

from camtx.controller import (
    BuildError,
    ConfigFile,
    ConfigStore,
    ControlAPI,
    EventMonitor,
    PipelineBackend,
    PipelineSupervisor,
    RecoveryPolicy,
    RestartBudget,
    StatsRegister,
)
from camtx.models import AppConfig
from camtx.utils import LoggingConfig
from camtx.webserver import WebServer

# Type alias for signal handlers
type SignalHandler = Callable[[int, FrameType | None], None]


class CameraTxApp:
    """Camera transmitter application."""

    def __init__(self, config: AppConfig, backend: PipelineBackend | None = None) -> None:
        """Wire the controller, the event monitor and the web server together.

        The stored stream configuration is loaded (or initialized with defaults)
        here; nothing touches the camera until the context is entered.

        Args:
            config: The application configuration.
            backend: Pipeline backend; the GStreamer backend when omitted.

        """
        config.validate()
        self.config = config
        self.is_shutting_down = False
        self._shutdown_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._start_time = time.time()

        LoggingConfig.configure(config.log_level, config.log_file)

        self.backend = backend or self._create_backend()
        self.config_file = ConfigFile(config.config_path)
        self.store = ConfigStore(self.config_file.load_or_init())
        self.stats = StatsRegister()

        self.supervisor = PipelineSupervisor(
            self.store,
            self.backend,
            self.stats,
            teardown_timeout=config.teardown_timeout,
            quiescence_seconds=config.quiescence_seconds,
            max_encoder_attempts=config.max_encoder_attempts,
            recovery_policy=RecoveryPolicy(config.recovery_policy),
            restart_budget=RestartBudget(config.max_restarts, config.restart_window),
        )
        self.monitor = EventMonitor(self.supervisor, self.backend, on_exit=self._on_monitor_exit)
        self.control_api = ControlAPI(
            self.store,
            self.supervisor,
            self.stats,
            self.backend,
            config_file=self.config_file,
        )
        self.web_server = WebServer(self.control_api)

        signal_handler: SignalHandler = self._signal_handler
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    @staticmethod
    def _create_backend() -> PipelineBackend:
        # PyGObject is an optional extra, so the import is deferred.
        from camtx.backends.gstreamer import GStreamerBackend

        return GStreamerBackend()

    async def _start_services(self) -> None:
        """Start the pipeline, then the event monitor, then the web server.

        Raises:
            BuildError: The initial pipeline could not be built.

        """
        self._loop = asyncio.get_running_loop()
        initial = self.store.read()
        logger.info(
            "Starting stream",
            host=initial.host,
            port=initial.port,
            source=initial.source.value,
            encoder=initial.encoder,
            width=initial.width,
            height=initial.height,
            framerate=initial.framerate,
        )
        await asyncio.to_thread(self.supervisor.start, initial)

        self.monitor.start()
        await self.web_server.start(
            host=self.config.http_host,
            port=self.config.http_port,
            log_level=LoggingConfig.level(),
        )

    async def _cleanup_services(self) -> None:
        """Stop the monitor, the pipeline and the web server.

        Each service is stopped even if an earlier one fails; errors are logged.
        """

        async def _shutdown_service(service_name: str, shutdown: Awaitable[None]) -> None:
            try:
                await shutdown
                logger.debug("Service stopped", service=service_name)
            except Exception as e:  # noqa: BLE001
                logger.error(
                    "Error stopping service",
                    service=service_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        # The monitor thread may be inside a rebuild.
        await _shutdown_service(
            "monitor",
            asyncio.to_thread(self.monitor.stop, self.supervisor.rebuild_timeout),
        )
        await _shutdown_service("pipeline", asyncio.to_thread(self.supervisor.stop))
        await _shutdown_service("web_server", self.web_server.stop())

    async def __aenter__(self) -> "CameraTxApp":
        logger.info("Starting camtx services")
        await self._start_services()
        logger.info("Started camtx services")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        logger.info("Application shutdown initiated, cleaning up services")
        try:
            await self._cleanup_services()
            logger.info("Cleaned up application services")
        except Exception as cleanup_error:  # noqa: BLE001
            logger.error(
                "Error during service cleanup",
                error=str(cleanup_error),
                error_type=type(cleanup_error).__name__,
            )

    def _signal_handler(self, signum: int, _frame: FrameType | None) -> None:
        logger.info("Received shutdown signal, initiating graceful shutdown", signal=signum)
        self.shutdown()

    def _on_monitor_exit(self) -> None:
        """Called on the monitor thread when its loop ends."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.shutdown)

    async def run(self) -> None:
        """Wait until a signal or a fatal pipeline fault asks for shutdown."""
        logger.info("camtx running", http_port=self.config.http_port)
        await self._shutdown_event.wait()
        logger.info("camtx stopping", uptime_seconds=round(time.time() - self._start_time, 1))

    def shutdown(self) -> None:
        """Trigger the shutdown event. Safe to call more than once."""
        if self.is_shutting_down:
            return

        logger.info("Shutting down camtx")
        self.is_shutting_down = True
        self._shutdown_event.set()


async def main() -> None:
    """Load configuration, run the application and exit non-zero on startup failure."""
    exit_code = 0
    load_dotenv(override=True)

    try:
        config = AppConfig.from_env()
        async with CameraTxApp(config) as app:
            await app.run()

    except ValueError as e:
        logger.error(
            "Configuration error - application startup failed",
            error=str(e),
            error_type=type(e).__name__,
            stage="startup",
        )
        exit_code = 1
    except BuildError as e:
        logger.error(
            "Failed to start pipeline",
            error=str(e),
            element=e.element,
            stage="startup",
        )
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:  # noqa: BLE001
        logger.error(
            "Runtime error - application failed",
            error=str(e),
            error_type=type(e).__name__,
            stage="runtime",
        )
        exit_code = 1
    finally:
        logger.info("camtx shutdown completed")
        if exit_code != 0:
            sys.exit(exit_code)


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application terminated by user")
        sys.exit(0)


if __name__ == "__main__":
    run()

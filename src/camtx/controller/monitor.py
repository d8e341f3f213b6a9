# pyright: strict
"""Background thread draining pipeline events and feeding the supervisor."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from .errors import BuildError
from .types import BackendEvent, ControllerState, EventKind, FaultDecision, Generation

if TYPE_CHECKING:
    from .backend import EventSource, PipelineBackend, PipelineHandle
    from .supervisor import PipelineSupervisor

ENCODER_HINT = "check that the configured encoder is installed and supported by the hardware"


class EventMonitor:
    """Control loop that watches the live pipeline's event stream.

    Each tick runs any scheduled rebuild, then polls the current handle's event
    source with a short timeout. Fatal events are handed to the supervisor,
    which answers with a recovery decision. The source is re-resolved whenever
    the handle generation changes, so events from a replaced pipeline are never
    read.
    """

    def __init__(
        self,
        supervisor: PipelineSupervisor,
        backend: PipelineBackend,
        *,
        poll_timeout: float = 0.1,
        idle_interval: float = 0.1,
        on_exit: Callable[[], None] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._backend = backend
        self.poll_timeout = poll_timeout
        self.idle_interval = idle_interval
        self._on_exit = on_exit

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._source: EventSource | None = None
        self._source_generation: Generation | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitor thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="camtx-event-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info("Pipeline event monitor started")

    def stop(self, timeout: float = 2.0) -> None:
        """Ask the monitor to exit and wait for it."""
        self._stop_event.set()
        self._release_source()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Pipeline event monitor did not exit in time", timeout=timeout)
        self._thread = None

    def run_once(self) -> bool:
        """Run a single loop iteration.

        Returns:
            False once the loop should exit.

        """
        if self._stop_event.is_set():
            return False
        if self._supervisor.state is ControllerState.TERMINATING:
            return False

        self._supervisor.run_pending()

        handle, generation = self._supervisor.current_handle()
        if handle is None:
            self._release_source()
            self._stop_event.wait(self.idle_interval)
            return not self._stop_event.is_set()

        # stop() may release the source from another thread, so poll the local.
        source = self._current_source(handle, generation)
        event = source.poll(self.poll_timeout)
        if event is None:
            return not self._stop_event.is_set()
        return self.dispatch(generation, event)

    def _current_source(self, handle: PipelineHandle, generation: Generation) -> EventSource:
        source = self._source
        if source is None or self._source_generation != generation:
            self._release_source()
            source = self._backend.events(handle)
            self._source = source
            self._source_generation = generation
        return source

    def dispatch(self, generation: Generation, event: BackendEvent) -> bool:
        """Act on one event from the pipeline with the given generation.

        Returns:
            False if the controller is shutting down because of the event.

        """
        match event.kind:
            case EventKind.ERROR | EventKind.END_OF_STREAM:
                return self._handle_fatal(generation, event)
            case EventKind.WARNING:
                logger.warning(
                    "Pipeline warning",
                    element=event.source,
                    message=event.message,
                    debug=event.debug,
                )
            case EventKind.INFO:
                logger.info("Pipeline info", element=event.source, message=event.message)
            case EventKind.STATE_CHANGED:
                if event.from_pipeline and generation == self._supervisor.generation:
                    logger.debug(
                        "Pipeline state changed",
                        old_state=event.old_state,
                        new_state=event.new_state,
                    )
        return True

    def _handle_fatal(self, generation: Generation, event: BackendEvent) -> bool:
        if event.kind is EventKind.END_OF_STREAM:
            logger.warning("Pipeline reached end of stream", element=event.source)
        else:
            logger.error(
                "Pipeline error",
                element=event.source,
                message=event.message,
                debug=event.debug,
            )
            if "enc" in event.source.lower():
                logger.error("Encoder failure", hint=ENCODER_HINT)

        decision = self._supervisor.handle_fault(generation, event)
        match decision:
            case FaultDecision.IGNORE:
                return True
            case FaultDecision.RESTART:
                self._release_source()
                try:
                    self._supervisor.restart(f"runtime {event.kind.value} from {event.source}")
                except BuildError as e:
                    logger.error("Automatic pipeline restart failed", error=str(e))
                return True
            case FaultDecision.TERMINATE:
                logger.error(
                    "Fatal pipeline fault, shutting down",
                    kind=event.kind.value,
                    error=str(self._supervisor.last_fault),
                )
                self._release_source()
                self._supervisor.stop()
                return False

    def _release_source(self) -> None:
        source = self._source
        self._source = None
        self._source_generation = None
        if source is not None:
            source.close()

    def _run(self) -> None:
        try:
            while self.run_once():
                pass
        except Exception:  # noqa: BLE001
            logger.exception("Pipeline event monitor crashed")
            self._supervisor.stop()
        finally:
            self._release_source()
            logger.info("Pipeline event monitor stopped")
            if self._on_exit is not None:
                self._on_exit()

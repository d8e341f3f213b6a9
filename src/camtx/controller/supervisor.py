# pyright: strict
"""Pipeline supervisor: owns the pipeline handle and reconciles configuration."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from functools import partial
from typing import TYPE_CHECKING, Any

from loguru import logger

from .errors import (
    BuildError,
    ControllerError,
    EncoderUnavailableError,
    PatchError,
    RecoveryPolicy,
    RestartBudget,
    RuntimeFault,
    TeardownTimeoutError,
)
from .state import StateMachine
from .types import (
    BackendEvent,
    ConfigDelta,
    ControllerState,
    FaultDecision,
    Generation,
    ReconcileAction,
)

if TYPE_CHECKING:
    from camtx.models import StreamConfig

    from .backend import PipelineBackend, PipelineHandle
    from .stats import StatsRegister
    from .store import ConfigStore

DEFAULT_FALLBACK_ENCODERS: tuple[str, ...] = (
    "v4l2h264enc",
    "omxh264enc",
    "x264enc",
    "nvh264enc",
    "vaapih264enc",
)


# Seconds allowed for one build attempt when bounding a shutdown wait.
BUILD_ATTEMPT_ALLOWANCE = 1.0

class PipelineSupervisor:
    """Owns the single live pipeline and drives it through its lifecycle.

    The supervisor decides, for each configuration delta, whether the running
    pipeline can be patched in place or has to be rebuilt. Sink-only changes
    (destination host and port) are applied to the transmission element while
    the stream keeps flowing. Every other change goes through a rebuild:
    bounded teardown, a quiescence delay so the capture hardware is released,
    and a build of the latest desired configuration with encoder fallback.

    Locking follows one rule: the controller lock (shared with the
    ``ConfigStore``) is held while shared state is read or changed, and released
    around every slow backend call (teardown, sleep, build). After reacquiring
    it the supervisor re-validates what happened meanwhile: a shutdown, or newer
    configuration updates that were coalesced through the pending-restart flag.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: ConfigStore,
        backend: PipelineBackend,
        stats: StatsRegister,
        *,
        teardown_timeout: float = 5.0,
        quiescence_seconds: float = 1.0,
        fallback_encoders: Sequence[str] = DEFAULT_FALLBACK_ENCODERS,
        max_encoder_attempts: int = 6,
        recovery_policy: RecoveryPolicy = RecoveryPolicy.TERMINATE,
        restart_budget: RestartBudget | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the supervisor.

        Args:
            store: Configuration store; its lock becomes the controller lock.
            backend: Media pipeline backend.
            stats: Statistics register reset after every successful build.
            teardown_timeout: Seconds to wait for a graceful pipeline stop.
            quiescence_seconds: Delay between teardown and the next build.
            fallback_encoders: Encoders tried after the requested one.
            max_encoder_attempts: Upper bound on encoders tried per build.
            recovery_policy: What to do on a fatal runtime fault.
            restart_budget: Bound on automatic restarts for the RESTART policy.
            sleep: Sleep function, replaceable in tests.

        """
        self._store = store
        self._backend = backend
        self._stats = stats
        self._lock = store.lock
        self._sleep = sleep

        self.teardown_timeout = teardown_timeout
        self.quiescence_seconds = quiescence_seconds
        self.fallback_encoders = tuple(fallback_encoders)
        self.max_encoder_attempts = max_encoder_attempts
        self.recovery_policy = recovery_policy
        self.restart_budget = restart_budget or RestartBudget()

        self._machine = StateMachine()
        self._handle: PipelineHandle | None = None
        self._generation: Generation = 0
        self._active_encoder: str | None = None
        self._running_config: StreamConfig | None = None
        self._last_good: StreamConfig | None = None
        self._rebuilding = False
        self._pending_restart = False
        self._stopped = False
        self._rebuild_done = threading.Condition(self._lock)
        self._rebuild_thread: int | None = None
        self._last_error: str | None = None
        self._last_fault: RuntimeFault | None = None
        self._rebuild_count = 0

    # Read-only views

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._machine.state

    @property
    def state_machine(self) -> StateMachine:
        return self._machine

    @property
    def generation(self) -> Generation:
        return self._generation

    @property
    def active_encoder(self) -> str | None:
        with self._lock:
            return self._active_encoder

    @property
    def running_config(self) -> StreamConfig | None:
        with self._lock:
            return self._running_config

    @property
    def is_live(self) -> bool:
        with self._lock:
            return self._handle is not None

    @property
    def has_pending_restart(self) -> bool:
        with self._lock:
            return self._pending_restart

    @property
    def rebuild_timeout(self) -> float:
        """Upper bound on one rebuild, including releasing a pipeline built during shutdown."""
        return (
            2 * self.teardown_timeout
            + self.quiescence_seconds
            + self.max_encoder_attempts * BUILD_ATTEMPT_ALLOWANCE
        )

    @property
    def last_fault(self) -> RuntimeFault | None:
        """The most recent fatal pipeline event from a current pipeline."""
        with self._lock:
            return self._last_fault

    def current_handle(self) -> tuple[PipelineHandle | None, Generation]:
        """Return the live handle and its generation."""
        with self._lock:
            return self._handle, self._generation

    def status(self) -> dict[str, Any]:
        """Summarize the supervisor for the health endpoint."""
        with self._lock:
            desired = self._store.read()
            return {
                "state": self._machine.state.value,
                "pipeline_live": self._handle is not None,
                "encoder": self._active_encoder,
                "requested_encoder": desired.encoder,
                "running_desired_config": self._running_config == desired,
                "generation": self._generation,
                "rebuilds": self._rebuild_count,
                "pending_restart": self._pending_restart,
                "restarts_remaining": self.restart_budget.remaining,
                "last_error": self._last_error,
            }

    def encoder_candidates(self, requested: str) -> list[str]:
        """Return the ordered encoders to try for ``requested``, without repeats."""
        candidates = [requested]
        candidates.extend(e for e in self.fallback_encoders if e not in candidates)
        return candidates[: self.max_encoder_attempts]

    # Lifecycle operations

    def start(self, config: StreamConfig) -> None:
        """Build and start the first pipeline.

        Raises:
            BuildError: No pipeline could be built; nothing is left running and
                the state is back to STOPPED.
            ControllerError: The supervisor was not stopped.

        """
        with self._lock:
            state = self._machine.state
            if state is not ControllerState.STOPPED or self._handle is not None:
                error_msg = f"Cannot start pipeline in state {state.value}"
                raise ControllerError(error_msg)
            if self._rebuilding:
                error_msg = "A pipeline build is already in progress"
                raise ControllerError(error_msg)
            self._begin_rebuild_locked("start")

        self._run_rebuild(None, config)

    def reconcile(
        self,
        delta: ConfigDelta,
        config: StreamConfig,
        *,
        defer_rebuild: bool = False,
    ) -> ReconcileAction:
        """Bring the running pipeline in line with a configuration change.

        Args:
            delta: Fields changed by the update.
            config: Configuration snapshot after the update. A sink patch uses the
                store's latest destination instead, so a patch that arrives late
                never rolls the sink back to a superseded host or port.
            defer_rebuild: Leave a needed rebuild to the control loop
                (``run_pending``) instead of running it on the calling thread.

        Returns:
            The action taken.

        Raises:
            BuildError: A synchronous rebuild failed. The supervisor is left
                DEGRADED (previous configuration restored) or STOPPED.

        """
        if delta.is_empty:
            return ReconcileAction.NONE

        with self._lock:
            state = self._machine.state
            if state is ControllerState.TERMINATING:
                logger.warning(
                    "Ignoring configuration change while terminating",
                    changed=sorted(delta.changed),
                )
                return ReconcileAction.NONE

            if self._rebuilding:
                # Coalesced: the in-flight rebuild re-reads the store when it finishes.
                self._pending_restart = True
                logger.info(
                    "Rebuild in progress, configuration change deferred",
                    changed=sorted(delta.changed),
                )
                return ReconcileAction.DEFERRED

            if delta.is_sink_only and self._handle is not None:
                latest = self._store.read()
                if (latest.host, latest.port) != (config.host, config.port):
                    logger.debug(
                        "Patching sink from newer configuration",
                        host=latest.host,
                        port=latest.port,
                    )
                try:
                    self._patch_sink_locked(latest.host, latest.port)
                except PatchError as e:
                    self._last_error = str(e)
                    logger.error(
                        "Sink patch failed, falling back to rebuild",
                        host=latest.host,
                        port=latest.port,
                        error=str(e),
                    )
                else:
                    return ReconcileAction.PATCHED

            if defer_rebuild:
                self._pending_restart = True
                logger.info(
                    "Pipeline rebuild scheduled",
                    changed=sorted(delta.changed),
                    structural=sorted(delta.structural_fields),
                )
                return ReconcileAction.SCHEDULED

        reason = "configuration change: " + ", ".join(sorted(delta.changed))
        if self._rebuild(reason):
            return ReconcileAction.REBUILT
        return ReconcileAction.DEFERRED

    def run_pending(self) -> bool:
        """Run a scheduled rebuild, if any. Called on every control-loop tick.

        Returns:
            True if a rebuild was attempted.

        """
        with self._lock:
            if (
                not self._pending_restart
                or self._rebuilding
                or self._machine.state is ControllerState.TERMINATING
            ):
                return False

        try:
            return self._rebuild("scheduled configuration change")
        except BuildError as e:
            logger.error("Scheduled pipeline rebuild failed", error=str(e))
            return True

    def restart(self, reason: str) -> bool:
        """Rebuild the pipeline from the current desired configuration.

        Raises:
            BuildError: The rebuild failed.

        """
        return self._rebuild(reason)

    def handle_fault(self, generation: Generation, event: BackendEvent) -> FaultDecision:
        """Decide what a fatal pipeline event means for the controller.

        Events from a handle that is no longer current are stale and ignored.
        """
        with self._lock:
            if generation != self._generation or self._handle is None:
                logger.debug(
                    "Discarding fault from stale pipeline",
                    event_generation=generation,
                    generation=self._generation,
                    kind=event.kind.value,
                )
                return FaultDecision.IGNORE
            if self._machine.state is ControllerState.TERMINATING:
                return FaultDecision.IGNORE

            fault = RuntimeFault(event)
            self._last_fault = fault
            self._last_error = str(fault)

            if (
                self.recovery_policy is RecoveryPolicy.RESTART
                and self.restart_budget.try_acquire()
            ):
                logger.warning(
                    "Pipeline fault, restarting",
                    kind=event.kind.value,
                    element=event.source,
                    restarts_remaining=self.restart_budget.remaining,
                )
                return FaultDecision.RESTART

            self._machine.transition(
                ControllerState.TERMINATING,
                reason=f"fatal {event.kind.value} from {event.source}",
            )
            return FaultDecision.TERMINATE

    def stop(self, timeout: float | None = None) -> None:
        """Tear down the pipeline and move to TERMINATING. Idempotent.

        A rebuild running on another thread is waited for, up to ``timeout``
        seconds (default ``rebuild_timeout``), so a pipeline it builds during
        shutdown is released before this returns.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._pending_restart = False
            if self._machine.state is not ControllerState.TERMINATING:
                self._machine.transition(ControllerState.TERMINATING, reason="shutdown")
            handle = self._detach_locked()

        if handle is not None:
            self._teardown(handle)
        self._wait_for_rebuild(self.rebuild_timeout if timeout is None else timeout)
        logger.info("Pipeline supervisor stopped")

    # Rebuild internals

    def _begin_rebuild_locked(self, reason: str) -> PipelineHandle | None:
        self._rebuilding = True
        self._rebuild_thread = threading.get_ident()
        self._pending_restart = False
        handle = self._detach_locked()
        if self._machine.state is ControllerState.STOPPED:
            self._machine.transition(ControllerState.BUILDING, reason=reason)
        else:
            self._machine.transition(ControllerState.RESTARTING, reason=reason)
        return handle

    def _end_rebuild_locked(self) -> None:
        self._rebuilding = False
        self._rebuild_thread = None
        self._rebuild_done.notify_all()

    def _wait_for_rebuild(self, timeout: float) -> None:
        with self._lock:
            if self._rebuild_thread == threading.get_ident():
                return
            if not self._rebuild_done.wait_for(lambda: not self._rebuilding, timeout):
                logger.warning("Pipeline rebuild still running at shutdown", timeout=timeout)

    def _rebuild(self, reason: str) -> bool:
        with self._lock:
            if self._machine.state is ControllerState.TERMINATING:
                return False
            if self._rebuilding:
                self._pending_restart = True
                return False
            old_handle = self._begin_rebuild_locked(reason)

        self._run_rebuild(old_handle, None)
        return True

    def _run_rebuild(
        self,
        old_handle: PipelineHandle | None,
        config: StreamConfig | None,
    ) -> None:
        """Teardown, quiescence and build loop. Called without the lock held."""
        handle = old_handle
        try:
            while True:
                if handle is not None:
                    self._teardown(handle)
                    logger.info(
                        "Waiting for capture device release",
                        seconds=self.quiescence_seconds,
                    )
                    self._sleep(self.quiescence_seconds)
                    handle = None

                target = config or self._store.read()
                config = None
                try:
                    new_handle, encoder = self._build_with_fallback(target)
                except BuildError as e:
                    retry = self._on_build_failure(target, e)
                    if retry:
                        continue
                    raise

                leftover: PipelineHandle | None = None
                with self._lock:
                    if self._machine.state is ControllerState.TERMINATING:
                        leftover = new_handle
                    else:
                        desired = self._store.read()
                        delta = ConfigDelta.between(target, desired)
                        if delta.requires_rebuild:
                            logger.info(
                                "Configuration changed during rebuild, rebuilding again",
                                changed=sorted(delta.changed),
                            )
                            handle = new_handle
                            self._pending_restart = False
                            continue

                        self._install_locked(new_handle, encoder, target)
                        if delta.sink_fields:
                            self._apply_late_sink_change_locked(desired)
                        self._machine.transition(ControllerState.RUNNING, reason="build complete")
                        self._end_rebuild_locked()
                        self._pending_restart = False

                if leftover is not None:
                    logger.info("Shutdown during build, releasing new pipeline")
                    self._teardown(leftover)
                    with self._lock:
                        self._end_rebuild_locked()
                return
        except BaseException:
            with self._lock:
                self._end_rebuild_locked()
            raise

    def _on_build_failure(self, target: StreamConfig, error: BuildError) -> bool:
        """Handle a failed build with no pipeline live.

        Returns:
            True if a newer desired configuration arrived and should be built
            instead; False once the supervisor has settled in DEGRADED or
            STOPPED and the error should propagate.

        """
        logger.error(
            "Pipeline build failed",
            error=str(error),
            element=error.element,
            encoder=target.encoder,
        )
        with self._lock:
            self._last_error = str(error)
            if self._machine.state is ControllerState.TERMINATING:
                self._end_rebuild_locked()
                return False
            if self._store.read() != target:
                logger.info("Newer configuration pending, retrying build")
                self._pending_restart = False
                return True
            last_good = self._last_good if self._last_good != target else None

        if last_good is not None and self._restore(last_good):
            return False

        with self._lock:
            self._end_rebuild_locked()
            if self._machine.state is not ControllerState.TERMINATING:
                self._machine.transition(ControllerState.STOPPED, reason="build failed")
        return False

    def _restore(self, last_good: StreamConfig) -> bool:
        """Rebuild the last configuration that ran successfully."""
        logger.warning(
            "Restoring last working pipeline configuration",
            encoder=last_good.encoder,
            width=last_good.width,
            height=last_good.height,
            framerate=last_good.framerate,
        )
        try:
            handle, encoder = self._build_with_fallback(last_good)
        except BuildError as e:
            logger.error("Restoring previous pipeline failed", error=str(e))
            return False

        with self._lock:
            if self._machine.state is ControllerState.TERMINATING:
                leftover = handle
            else:
                self._install_locked(handle, encoder, last_good)
                self._machine.transition(
                    ControllerState.DEGRADED, reason="running previous configuration"
                )
                self._end_rebuild_locked()
                return True

        self._teardown(leftover)
        with self._lock:
            self._end_rebuild_locked()
        return True

    def _build_with_fallback(self, config: StreamConfig) -> tuple[PipelineHandle, str]:
        candidates = self.encoder_candidates(config.encoder)
        last_error: EncoderUnavailableError | None = None

        for encoder in candidates:
            attempt = (
                config
                if encoder == config.encoder
                else config.model_copy(update={"encoder": encoder})
            )
            logger.info(
                "Building pipeline",
                host=attempt.host,
                port=attempt.port,
                source=attempt.source.value,
                device=attempt.device or "auto",
                encoder=encoder,
                width=attempt.width,
                height=attempt.height,
                framerate=attempt.framerate,
            )
            try:
                handle = self._backend.build(attempt)
            except EncoderUnavailableError as e:
                logger.warning("Encoder not available", encoder=encoder)
                last_error = e
                continue

            if encoder != config.encoder:
                logger.warning(
                    "Using fallback encoder",
                    requested=config.encoder,
                    encoder=encoder,
                )
            return handle, encoder

        error_msg = f"No suitable encoder found after trying: {', '.join(candidates)}"
        raise BuildError(error_msg, element="encoder") from last_error

    def _install_locked(
        self,
        handle: PipelineHandle,
        encoder: str,
        config: StreamConfig,
    ) -> None:
        self._generation += 1
        self._handle = handle
        self._active_encoder = encoder
        self._running_config = config
        self._last_good = config
        self._rebuild_count += 1
        self._backend.attach_frame_probe(handle, partial(self._on_frame, self._generation))
        self._stats.reset()
        logger.info(
            "Pipeline started",
            host=config.host,
            port=config.port,
            encoder=encoder,
            generation=self._generation,
        )

    def _detach_locked(self) -> PipelineHandle | None:
        handle = self._handle
        if handle is not None:
            self._handle = None
            self._generation += 1
        return handle

    def _patch_sink_locked(self, host: str, port: int) -> None:
        self._backend.patch_sink(self._handle, host, port)
        if self._running_config is not None:
            self._running_config = self._running_config.model_copy(
                update={"host": host, "port": port}
            )
        logger.info("Sink destination updated in place", host=host, port=port)

    def _apply_late_sink_change_locked(self, desired: StreamConfig) -> None:
        try:
            self._patch_sink_locked(desired.host, desired.port)
        except PatchError as e:
            self._last_error = str(e)
            self._pending_restart = True
            logger.error("Could not apply destination change to new pipeline", error=str(e))

    def _teardown(self, handle: PipelineHandle) -> None:
        """Stop a detached pipeline, forcing it down if it does not cooperate."""
        try:
            self._backend.stop(handle, self.teardown_timeout)
        except TeardownTimeoutError as e:
            logger.warning(
                "Degraded teardown, forcing pipeline destruction",
                timeout=self.teardown_timeout,
                error=str(e),
            )
            self._backend.destroy(handle)
        except ControllerError as e:
            logger.error("Pipeline stop failed, forcing destruction", error=str(e))
            self._backend.destroy(handle)
        else:
            logger.info("Pipeline stopped")

    def _on_frame(self, generation: Generation, byte_size: int) -> None:
        if generation == self._generation:
            self._stats.record_frame(byte_size)

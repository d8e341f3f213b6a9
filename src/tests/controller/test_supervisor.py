# pyright: standard
"""Tests for the pipeline supervisor."""

from __future__ import annotations

import threading

import pytest

from camtx.controller import (
    BackendEvent,
    BuildError,
    ConfigStore,
    ControllerError,
    ControllerState,
    EventKind,
    FaultDecision,
    PipelineSupervisor,
    ReconcileAction,
    RecoveryPolicy,
    RestartBudget,
    RuntimeFault,
    StatsRegister,
)
from camtx.models import SUPPORTED_ENCODERS, StreamConfig
from tests.fakes import FakeBackend, FakeClock

pytestmark = pytest.mark.unit


def _update(
    supervisor: PipelineSupervisor,
    store: ConfigStore,
    partial: dict[str, object],
    *,
    defer_rebuild: bool = False,
) -> ReconcileAction:
    result = store.apply(partial)
    return supervisor.reconcile(result.delta, result.config, defer_rebuild=defer_rebuild)


class TestStart:
    """Initial pipeline construction."""

    def test_start_runs_pipeline(
        self, supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that start builds the configured pipeline and goes RUNNING."""
        supervisor.start(store.read())

        assert supervisor.state is ControllerState.RUNNING
        assert supervisor.is_live
        assert supervisor.active_encoder == "v4l2h264enc"
        assert supervisor.running_config == store.read()
        assert len(backend.live_handles) == 1
        assert backend.handles[0].probe is not None

    def test_start_failure_leaves_nothing_running(
        self, supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a failed initial build propagates and returns to STOPPED."""
        backend.fail_when = lambda _config: True

        with pytest.raises(BuildError):
            supervisor.start(store.read())

        assert supervisor.state is ControllerState.STOPPED
        assert not supervisor.is_live
        assert backend.live_handles == []
        assert supervisor.status()["last_error"]

    def test_start_twice_is_rejected(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore
    ) -> None:
        """Test that start requires STOPPED."""
        with pytest.raises(ControllerError):
            running_supervisor.start(store.read())

    def test_frames_reach_stats(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend, stats: StatsRegister
    ) -> None:
        """Test that the frame probe feeds the statistics register."""
        probe = backend.handles[0].probe
        assert probe is not None
        probe(1500)
        probe(500)

        view = stats.snapshot()
        assert view.frame_count == 2
        assert view.total_bytes == 2000


class TestEncoderFallback:
    """Encoder candidate selection."""

    def test_candidates_without_repeats(self, supervisor: PipelineSupervisor) -> None:
        """Test that the requested encoder comes first and is not tried twice."""
        assert supervisor.encoder_candidates("x264enc") == [
            "x264enc",
            "v4l2h264enc",
            "omxh264enc",
            "nvh264enc",
            "vaapih264enc",
        ]

    def test_falls_back_to_available_encoder(
        self, supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that unavailable encoders are skipped in order."""
        backend.unavailable_encoders = {"v4l2h264enc", "omxh264enc"}

        supervisor.start(store.read())

        assert backend.built_encoders == ["v4l2h264enc", "omxh264enc", "x264enc"]
        assert supervisor.active_encoder == "x264enc"
        assert store.read().encoder == "v4l2h264enc"

    def test_attempts_are_bounded(
        self, store: ConfigStore, backend: FakeBackend, stats: StatsRegister
    ) -> None:
        """Test that the search stops after max_encoder_attempts."""
        backend.unavailable_encoders = set(SUPPORTED_ENCODERS)
        supervisor = PipelineSupervisor(
            store, backend, stats, max_encoder_attempts=2, sleep=lambda _s: None
        )

        with pytest.raises(BuildError) as exc_info:
            supervisor.start(store.read())

        assert len(backend.builds) == 2
        assert exc_info.value.element == "encoder"
        assert supervisor.state is ControllerState.STOPPED

    def test_other_build_errors_do_not_fall_back(
        self, supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that only a missing encoder moves on to the next candidate."""
        backend.fail_when = lambda _config: True

        with pytest.raises(BuildError):
            supervisor.start(store.read())

        assert backend.built_encoders == ["v4l2h264enc"]


class TestReconcile:
    """Applying configuration deltas to a running pipeline."""

    def test_empty_delta(self, running_supervisor: PipelineSupervisor, store: ConfigStore) -> None:
        """Test that rejected-only updates do nothing."""
        assert _update(running_supervisor, store, {"framerate": 500}) is ReconcileAction.NONE

    def test_sink_change_is_patched_in_place(
        self,
        running_supervisor: PipelineSupervisor,
        store: ConfigStore,
        backend: FakeBackend,
        stats: StatsRegister,
        sleeps: list[float],
    ) -> None:
        """Test that a port change keeps the same pipeline and statistics."""
        handle = backend.handles[0]
        assert handle.probe is not None
        handle.probe(1000)
        generation = running_supervisor.generation

        action = _update(running_supervisor, store, {"port": 6000})

        assert action is ReconcileAction.PATCHED
        assert handle.port == 6000
        assert not handle.stopped
        assert len(backend.builds) == 1
        assert sleeps == []
        assert running_supervisor.generation == generation
        assert running_supervisor.state is ControllerState.RUNNING
        assert stats.snapshot().frame_count == 1
        assert running_supervisor.running_config is not None
        assert running_supervisor.running_config.port == 6000

    def test_out_of_order_sink_reconciles_keep_latest_destination(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that reconciling an older update after a newer one does not roll it back."""
        first = store.apply({"host": "10.0.0.5"})
        second = store.apply({"port": 6000})

        running_supervisor.reconcile(second.delta, second.config)
        running_supervisor.reconcile(first.delta, first.config)

        handle = backend.live_handles[0]
        assert (handle.host, handle.port) == ("10.0.0.5", 6000)
        assert backend.patches[-1] == ("10.0.0.5", 6000)
        assert running_supervisor.running_config == store.read()
        assert running_supervisor.status()["running_desired_config"] is True

    def test_failed_patch_escalates_to_rebuild(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a sink that refuses the patch is rebuilt."""
        backend.patch_fails = True

        action = _update(running_supervisor, store, {"host": "10.0.0.9"})

        assert action is ReconcileAction.REBUILT
        assert len(backend.builds) == 2
        assert backend.live_handles[0].host == "10.0.0.9"

    def test_structural_change_rebuilds(
        self,
        running_supervisor: PipelineSupervisor,
        store: ConfigStore,
        backend: FakeBackend,
        stats: StatsRegister,
        sleeps: list[float],
    ) -> None:
        """Test teardown, quiescence and a fresh build for a resolution change."""
        old = backend.handles[0]
        assert old.probe is not None
        old.probe(1000)
        generation = running_supervisor.generation

        action = _update(running_supervisor, store, {"width": 1920, "height": 1080})

        assert action is ReconcileAction.REBUILT
        assert old.stopped
        assert sleeps == [1.0]
        assert len(backend.live_handles) == 1
        new = backend.live_handles[0]
        assert (new.config.width, new.config.height) == (1920, 1080)
        assert running_supervisor.generation > generation
        assert running_supervisor.state is ControllerState.RUNNING
        assert stats.snapshot().frame_count == 0

    def test_stale_probe_is_ignored(
        self,
        running_supervisor: PipelineSupervisor,
        store: ConfigStore,
        backend: FakeBackend,
        stats: StatsRegister,
    ) -> None:
        """Test that buffers from a replaced pipeline are not counted."""
        old_probe = backend.handles[0].probe
        assert old_probe is not None

        _update(running_supervisor, store, {"framerate": 60})
        old_probe(1000)

        assert stats.snapshot().frame_count == 0

    def test_deferred_rebuild_runs_on_tick(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a scheduled rebuild waits for run_pending."""
        action = _update(running_supervisor, store, {"framerate": 60}, defer_rebuild=True)

        assert action is ReconcileAction.SCHEDULED
        assert running_supervisor.has_pending_restart
        assert len(backend.builds) == 1

        assert running_supervisor.run_pending()
        assert not running_supervisor.has_pending_restart
        assert backend.live_handles[0].config.framerate == 60
        assert not running_supervisor.run_pending()

    def test_teardown_timeout_forces_destroy(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a pipeline that will not stop is destroyed."""
        backend.stop_times_out = True
        old = backend.handles[0]

        action = _update(running_supervisor, store, {"encoder": "x264enc"})

        assert action is ReconcileAction.REBUILT
        assert old.destroyed
        assert running_supervisor.active_encoder == "x264enc"


class TestCoalescing:
    """Updates arriving while a rebuild is in flight."""

    def test_structural_update_during_build_is_coalesced(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that the newest configuration wins after a concurrent update."""
        deferred: list[ReconcileAction] = []

        def _concurrent_update(config: StreamConfig) -> None:
            if config.width == 1920:
                deferred.append(_update(running_supervisor, store, {"width": 640, "height": 480}))

        backend.on_build = _concurrent_update

        action = _update(running_supervisor, store, {"width": 1920, "height": 1080})

        assert action is ReconcileAction.REBUILT
        assert deferred == [ReconcileAction.DEFERRED]
        assert [c.width for c in backend.builds] == [1280, 1920, 640]
        assert len(backend.live_handles) == 1
        assert backend.live_handles[0].config.width == 640
        assert running_supervisor.running_config == store.read()
        assert not running_supervisor.has_pending_restart
        assert running_supervisor.state is ControllerState.RUNNING

    def test_sink_update_during_build_is_patched(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a port change made mid-build lands on the new pipeline."""

        def _concurrent_update(config: StreamConfig) -> None:
            if config.framerate == 60:
                store.apply({"port": 7000})

        backend.on_build = _concurrent_update

        _update(running_supervisor, store, {"framerate": 60})

        assert len(backend.builds) == 2
        assert backend.live_handles[0].port == 7000
        assert running_supervisor.running_config == store.read()

    def test_stop_during_build_releases_new_pipeline(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a shutdown racing a rebuild leaves nothing running."""

        def _shutdown(config: StreamConfig) -> None:
            if config.framerate == 60:
                running_supervisor.stop()

        backend.on_build = _shutdown

        _update(running_supervisor, store, {"framerate": 60})

        assert backend.live_handles == []
        assert not running_supervisor.is_live
        assert running_supervisor.state is ControllerState.TERMINATING


class TestRebuildFailure:
    """Recovery from failed reconfiguration."""

    def test_restores_last_good_configuration(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a failed rebuild falls back to the previous pipeline."""
        backend.fail_when = lambda config: config.width == 1920

        with pytest.raises(BuildError):
            _update(running_supervisor, store, {"width": 1920, "height": 1080})

        assert running_supervisor.state is ControllerState.DEGRADED
        assert running_supervisor.is_live
        assert running_supervisor.running_config is not None
        assert running_supervisor.running_config.width == 1280
        assert store.read().width == 1920
        status = running_supervisor.status()
        assert not status["running_desired_config"]
        assert status["last_error"]

    def test_degraded_recovers_on_next_good_update(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that a working configuration brings the pipeline back to RUNNING."""
        backend.fail_when = lambda config: config.width == 1920
        with pytest.raises(BuildError):
            _update(running_supervisor, store, {"width": 1920, "height": 1080})

        action = _update(running_supervisor, store, {"width": 640, "height": 480})

        assert action is ReconcileAction.REBUILT
        assert running_supervisor.state is ControllerState.RUNNING
        assert running_supervisor.running_config == store.read()

    def test_stops_when_nothing_can_be_built(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that the supervisor ends STOPPED when the restore also fails."""
        backend.fail_when = lambda _config: True

        with pytest.raises(BuildError):
            _update(running_supervisor, store, {"framerate": 60})

        assert running_supervisor.state is ControllerState.STOPPED
        assert not running_supervisor.is_live
        assert backend.live_handles == []

    def test_deferred_failure_is_logged_not_raised(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that run_pending swallows the build error after recovery."""
        backend.fail_when = lambda config: config.framerate == 60
        _update(running_supervisor, store, {"framerate": 60}, defer_rebuild=True)

        assert running_supervisor.run_pending()
        assert running_supervisor.state is ControllerState.DEGRADED


class TestFaults:
    """Runtime fault decisions."""

    def _error(self) -> BackendEvent:
        return BackendEvent(EventKind.ERROR, "encoder", "Device or resource busy")

    def test_stale_fault_is_ignored(self, running_supervisor: PipelineSupervisor) -> None:
        """Test that faults from an old generation change nothing."""
        stale = running_supervisor.generation - 1

        decision = running_supervisor.handle_fault(stale, self._error())

        assert decision is FaultDecision.IGNORE
        assert running_supervisor.state is ControllerState.RUNNING

    def test_terminate_policy(self, running_supervisor: PipelineSupervisor) -> None:
        """Test the default policy of shutting down on a fatal fault."""
        decision = running_supervisor.handle_fault(running_supervisor.generation, self._error())

        assert decision is FaultDecision.TERMINATE
        assert running_supervisor.state is ControllerState.TERMINATING
        assert "Device or resource busy" in running_supervisor.status()["last_error"]

    def test_fault_is_recorded(self, running_supervisor: PipelineSupervisor) -> None:
        """Test that the fatal event is kept as a RuntimeFault for shutdown reporting."""
        assert running_supervisor.last_fault is None
        event = self._error()

        running_supervisor.handle_fault(running_supervisor.generation, event)

        fault = running_supervisor.last_fault
        assert isinstance(fault, RuntimeFault)
        assert fault.event is event
        assert running_supervisor.status()["last_error"] == str(fault)
        assert str(fault) == "error from encoder: Device or resource busy"

    def test_stale_fault_is_not_recorded(self, running_supervisor: PipelineSupervisor) -> None:
        """Test that an ignored event leaves no recorded fault."""
        running_supervisor.handle_fault(running_supervisor.generation - 1, self._error())

        assert running_supervisor.last_fault is None

    def test_restart_policy_is_bounded(
        self, store: ConfigStore, backend: FakeBackend, stats: StatsRegister
    ) -> None:
        """Test that restarts stop once the budget is exhausted."""
        supervisor = PipelineSupervisor(
            store,
            backend,
            stats,
            recovery_policy=RecoveryPolicy.RESTART,
            restart_budget=RestartBudget(max_restarts=1, clock=FakeClock()),
            sleep=lambda _s: None,
        )
        supervisor.start(store.read())

        first = supervisor.handle_fault(supervisor.generation, self._error())
        assert first is FaultDecision.RESTART
        supervisor.restart("runtime error")
        assert len(backend.builds) == 2

        second = supervisor.handle_fault(supervisor.generation, self._error())
        assert second is FaultDecision.TERMINATE
        assert supervisor.state is ControllerState.TERMINATING


class TestStop:
    """Shutdown behaviour."""

    def test_stop_is_idempotent(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that stop tears down once and ends TERMINATING."""
        running_supervisor.stop()
        running_supervisor.stop()

        assert running_supervisor.state is ControllerState.TERMINATING
        assert backend.handles[0].stopped
        assert not running_supervisor.is_live

    def test_stop_waits_for_rebuild_on_another_thread(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that stop returns only after a pipeline built during shutdown is released."""
        building = threading.Event()
        release = threading.Event()

        def _block(_config: StreamConfig) -> None:
            building.set()
            assert release.wait(timeout=5.0)

        backend.on_build = _block
        rebuild = threading.Thread(target=running_supervisor.restart, args=("test",))
        rebuild.start()
        assert building.wait(timeout=5.0)

        stopper = threading.Thread(target=running_supervisor.stop, kwargs={"timeout": 5.0})
        stopper.start()
        stopper.join(timeout=0.1)
        assert stopper.is_alive()

        release.set()
        stopper.join(timeout=5.0)
        rebuild.join(timeout=5.0)

        assert not stopper.is_alive()
        assert len(backend.handles) == 2
        assert backend.live_handles == []
        assert running_supervisor.state is ControllerState.TERMINATING

    def test_stop_wait_is_bounded(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that stop gives up on a rebuild that outlives the timeout."""
        building = threading.Event()
        release = threading.Event()

        def _block(_config: StreamConfig) -> None:
            building.set()
            assert release.wait(timeout=5.0)

        backend.on_build = _block
        rebuild = threading.Thread(target=running_supervisor.restart, args=("test",))
        rebuild.start()
        assert building.wait(timeout=5.0)

        try:
            running_supervisor.stop(timeout=0.05)
            assert running_supervisor.state is ControllerState.TERMINATING
        finally:
            release.set()
            rebuild.join(timeout=5.0)

        assert backend.live_handles == []

    def test_rebuild_timeout_covers_a_rebuild(self, supervisor: PipelineSupervisor) -> None:
        """Test that the shutdown bound exceeds teardown plus quiescence."""
        assert supervisor.rebuild_timeout > (
            supervisor.teardown_timeout + supervisor.quiescence_seconds
        )

    def test_stop_from_stopped(self, supervisor: PipelineSupervisor) -> None:
        """Test stopping a supervisor that never started."""
        supervisor.stop()

        assert supervisor.state is ControllerState.TERMINATING

    def test_updates_after_stop_are_ignored(
        self, running_supervisor: PipelineSupervisor, store: ConfigStore, backend: FakeBackend
    ) -> None:
        """Test that reconcile does nothing once terminating."""
        running_supervisor.stop()

        assert _update(running_supervisor, store, {"framerate": 60}) is ReconcileAction.NONE
        assert not running_supervisor.run_pending()
        assert len(backend.builds) == 1

    def test_status_document(self, running_supervisor: PipelineSupervisor) -> None:
        """Test the fields exposed through /health."""
        status = running_supervisor.status()

        assert status["state"] == "running"
        assert status["encoder"] == "v4l2h264enc"
        assert status["pipeline_live"] is True
        assert status["running_desired_config"] is True
        assert status["last_error"] is None

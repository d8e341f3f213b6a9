# pyright: standard
"""Tests for the pipeline event monitor."""

from __future__ import annotations

import threading

import pytest
from loguru import logger

from camtx.controller import (
    BackendEvent,
    ConfigStore,
    ControllerState,
    EventKind,
    EventMonitor,
    PipelineSupervisor,
    RecoveryPolicy,
    RestartBudget,
    StatsRegister,
)
from tests.fakes import FakeBackend, FakeClock

pytestmark = pytest.mark.unit


@pytest.fixture
def monitor(running_supervisor: PipelineSupervisor, backend: FakeBackend) -> EventMonitor:
    return EventMonitor(running_supervisor, backend, poll_timeout=0.0, idle_interval=0.0)


@pytest.fixture
def restarting_supervisor(
    store: ConfigStore, backend: FakeBackend, stats: StatsRegister
) -> PipelineSupervisor:
    """Create a running supervisor with the restart policy."""
    supervisor = PipelineSupervisor(
        store,
        backend,
        stats,
        recovery_policy=RecoveryPolicy.RESTART,
        restart_budget=RestartBudget(max_restarts=2, clock=FakeClock()),
        sleep=lambda _s: None,
    )
    supervisor.start(store.read())
    return supervisor


class TestEventMonitor:
    """Test cases for EventMonitor.run_once and dispatch."""

    def test_quiet_tick(self, monitor: EventMonitor, backend: FakeBackend) -> None:
        """Test that a tick without events keeps going."""
        assert monitor.run_once()
        assert len(backend.sources) == 1

    def test_source_reused_within_generation(
        self, monitor: EventMonitor, backend: FakeBackend
    ) -> None:
        """Test that the event source is only resolved once per pipeline."""
        monitor.run_once()
        monitor.run_once()

        assert len(backend.sources) == 1

    def test_source_replaced_after_rebuild(
        self,
        monitor: EventMonitor,
        running_supervisor: PipelineSupervisor,
        backend: FakeBackend,
    ) -> None:
        """Test that a new pipeline gets a new source and the old one is closed."""
        monitor.run_once()
        running_supervisor.restart("test")
        monitor.run_once()

        assert len(backend.sources) == 2
        assert backend.sources[0].closed
        assert backend.sources[1].handle is backend.live_handles[0]

    def test_warning_is_not_fatal(
        self,
        monitor: EventMonitor,
        running_supervisor: PipelineSupervisor,
        backend: FakeBackend,
    ) -> None:
        """Test that warnings and info are only logged."""
        backend.handles[0].push(EventKind.WARNING, "source", "frame dropped")
        backend.handles[0].push(EventKind.INFO, "encoder", "bitrate adjusted")

        assert monitor.run_once()
        assert monitor.run_once()
        assert running_supervisor.state is ControllerState.RUNNING

    def test_state_changes_are_not_fatal(
        self, monitor: EventMonitor, running_supervisor: PipelineSupervisor
    ) -> None:
        """Test that state-change events never affect the controller."""
        event = BackendEvent(
            EventKind.STATE_CHANGED,
            "camtx",
            old_state="paused",
            new_state="playing",
            from_pipeline=True,
        )

        assert monitor.dispatch(running_supervisor.generation, event)
        assert monitor.dispatch(running_supervisor.generation - 1, event)
        assert running_supervisor.state is ControllerState.RUNNING

    @pytest.mark.parametrize("kind", [EventKind.ERROR, EventKind.END_OF_STREAM])
    def test_fatal_event_terminates(
        self,
        kind: EventKind,
        monitor: EventMonitor,
        running_supervisor: PipelineSupervisor,
        backend: FakeBackend,
    ) -> None:
        """Test that the default policy stops the pipeline and the loop."""
        backend.handles[0].push(kind, "encoder", "Internal data stream error")

        assert not monitor.run_once()
        assert running_supervisor.state is ControllerState.TERMINATING
        assert backend.live_handles == []
        assert not monitor.run_once()

    def test_fatal_fault_is_reported_on_shutdown(
        self,
        monitor: EventMonitor,
        running_supervisor: PipelineSupervisor,
        backend: FakeBackend,
    ) -> None:
        """Test that the shutdown log carries the recorded fault."""
        messages: list[str] = []
        sink_id = logger.add(messages.append, format="{message} {extra}", level="ERROR")
        backend.handles[0].push(EventKind.ERROR, "encoder", "Internal data stream error")

        try:
            assert not monitor.run_once()
        finally:
            logger.remove(sink_id)

        fault = running_supervisor.last_fault
        assert fault is not None
        assert fault.event.message == "Internal data stream error"
        shutdown = [m for m in messages if m.startswith("Fatal pipeline fault")]
        assert len(shutdown) == 1
        assert str(fault) in shutdown[0]

    def test_source_released_mid_tick(
        self,
        monitor: EventMonitor,
        backend: FakeBackend,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a stop racing the poll ends the loop instead of crashing it."""
        assert monitor.run_once()
        current_source = monitor._current_source  # type: ignore[attr-defined]

        def stop_after_lookup(handle, generation):  # type: ignore[no-untyped-def]
            source = current_source(handle, generation)
            monitor.stop()
            return source

        monkeypatch.setattr(monitor, "_current_source", stop_after_lookup)

        assert not monitor.run_once()
        assert len(backend.sources) == 1
        assert backend.sources[0].closed

    def test_stale_fatal_event_is_ignored(
        self, monitor: EventMonitor, running_supervisor: PipelineSupervisor
    ) -> None:
        """Test that an error from a replaced pipeline is discarded."""
        event = BackendEvent(EventKind.ERROR, "source", "gone")

        assert monitor.dispatch(running_supervisor.generation - 1, event)
        assert running_supervisor.state is ControllerState.RUNNING

    def test_fatal_event_restarts_within_budget(
        self, restarting_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that the restart policy rebuilds on the monitor thread."""
        monitor = EventMonitor(restarting_supervisor, backend, poll_timeout=0.0, idle_interval=0.0)
        backend.handles[0].push(EventKind.ERROR, "source", "Device disconnected")

        assert monitor.run_once()
        assert len(backend.builds) == 2
        assert backend.handles[0].stopped
        assert restarting_supervisor.state is ControllerState.RUNNING

    def test_failed_restart_keeps_monitoring(
        self, restarting_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that a restart build failure is logged and the loop continues."""
        monitor = EventMonitor(restarting_supervisor, backend, poll_timeout=0.0, idle_interval=0.0)
        backend.handles[0].push(EventKind.ERROR, "source", "Device disconnected")
        backend.fail_when = lambda _config: True

        assert monitor.run_once()
        assert restarting_supervisor.state is ControllerState.STOPPED
        assert monitor.run_once()

    def test_runs_scheduled_rebuild(
        self,
        monitor: EventMonitor,
        running_supervisor: PipelineSupervisor,
        store: ConfigStore,
        backend: FakeBackend,
    ) -> None:
        """Test that each tick runs a pending rebuild."""
        result = store.apply({"framerate": 60})
        running_supervisor.reconcile(result.delta, result.config, defer_rebuild=True)

        monitor.run_once()

        assert backend.live_handles[0].config.framerate == 60


class TestEventMonitorThread:
    """Test cases for the background thread."""

    def test_exit_callback_on_fatal_fault(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that a fatal fault ends the thread and notifies the application."""
        exited = threading.Event()
        monitor = EventMonitor(
            running_supervisor,
            backend,
            poll_timeout=0.01,
            idle_interval=0.01,
            on_exit=exited.set,
        )
        monitor.start()
        backend.handles[0].push(EventKind.ERROR, "encoder", "Internal data stream error")

        assert exited.wait(timeout=5.0)
        monitor.stop()
        assert not monitor.is_running
        assert running_supervisor.state is ControllerState.TERMINATING

    def test_stop_closes_source(
        self, running_supervisor: PipelineSupervisor, backend: FakeBackend
    ) -> None:
        """Test that stop wakes the loop and releases the polling source."""
        monitor = EventMonitor(running_supervisor, backend, poll_timeout=0.01, idle_interval=0.01)
        monitor.start()
        assert monitor.is_running

        monitor.stop(timeout=5.0)

        assert not monitor.is_running
        assert all(source.closed for source in backend.sources)
        assert running_supervisor.state is ControllerState.RUNNING

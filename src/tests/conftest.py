# pyright: strict
"""Shared pytest fixtures for camtx tests."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from camtx.controller import (
    ConfigFile,
    ConfigStore,
    ControlAPI,
    PipelineSupervisor,
    StatsRegister,
)
from camtx.models import StreamConfig
from camtx.utils import LoggingConfig
from tests.fakes import FakeBackend


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None]:
    """Keep LoggingConfig state from leaking between tests."""
    yield
    LoggingConfig.reset()


@pytest.fixture
def backend() -> FakeBackend:
    """Create a fake pipeline backend."""
    return FakeBackend()


@pytest.fixture
def store() -> ConfigStore:
    """Create a configuration store holding the defaults."""
    return ConfigStore(StreamConfig())


@pytest.fixture
def stats() -> StatsRegister:
    return StatsRegister()


@pytest.fixture
def sleeps() -> list[float]:
    """Records quiescence sleeps instead of waiting."""
    return []


@pytest.fixture
def supervisor(
    store: ConfigStore,
    backend: FakeBackend,
    stats: StatsRegister,
    sleeps: list[float],
) -> PipelineSupervisor:
    """Create a supervisor that never really sleeps."""
    return PipelineSupervisor(
        store,
        backend,
        stats,
        teardown_timeout=0.5,
        quiescence_seconds=1.0,
        sleep=sleeps.append,
    )


@pytest.fixture
def running_supervisor(supervisor: PipelineSupervisor, store: ConfigStore) -> PipelineSupervisor:
    """Create a supervisor with the default pipeline already running."""
    supervisor.start(store.read())
    return supervisor


@pytest.fixture
def config_file(tmp_path: Path) -> ConfigFile:
    return ConfigFile(tmp_path / "camtx" / "config.json")


@pytest.fixture
def control_api(
    store: ConfigStore,
    running_supervisor: PipelineSupervisor,
    stats: StatsRegister,
    backend: FakeBackend,
    config_file: ConfigFile,
) -> ControlAPI:
    """Create a control API over a running supervisor."""
    return ControlAPI(store, running_supervisor, stats, backend, config_file=config_file)

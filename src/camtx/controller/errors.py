# pyright: strict
"""Controller error taxonomy and recovery policy."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from .types import BackendEvent, ControllerState


class RecoveryPolicy(Enum):
    """Policy applied when the pipeline reports a fatal runtime fault.

    - TERMINATE: The supervisor moves to TERMINATING and the process shuts down.
      No automatic rebuild is attempted. An operator fixes the configuration
      (for example by selecting another encoder through ``POST /config``) and
      restarts the service.

    - RESTART: The pipeline is rebuilt from the current desired configuration.
      Restarts are drawn from a ``RestartBudget``; once the budget for the
      sliding window is exhausted the supervisor terminates instead, so a
      permanently broken pipeline cannot cause a restart storm.
    """

    TERMINATE = "terminate"
    RESTART = "restart"


class ControllerError(Exception):
    """Base exception for controller errors."""


class BuildError(ControllerError):
    """The backend could not construct, link or start a pipeline."""

    def __init__(self, message: str, element: str | None = None) -> None:
        """Initialize build error with the failing element, if known."""
        super().__init__(message)
        self.element = element


class EncoderUnavailableError(BuildError):
    """The requested encoder element does not exist on this system."""

    def __init__(self, encoder: str) -> None:
        """Initialize encoder error."""
        super().__init__(f"Encoder {encoder} is not available", element="encoder")
        self.encoder = encoder


class PatchError(ControllerError):
    """The sink of a live pipeline could not be updated in place."""


class TeardownTimeoutError(ControllerError):
    """The backend did not acknowledge a graceful stop within the timeout."""

    def __init__(self, timeout: float, message: str | None = None) -> None:
        """Initialize teardown error."""
        super().__init__(message or f"Pipeline did not stop within {timeout:.1f}s")
        self.timeout = timeout


class RuntimeFault(ControllerError):
    """A fatal event reported by a running pipeline."""

    def __init__(self, event: BackendEvent) -> None:
        """Initialize runtime fault from the backend event."""
        super().__init__(f"{event.kind.value} from {event.source}: {event.message}")
        self.event = event


class InvalidTransitionError(ControllerError):
    """A state transition not allowed by the lifecycle state machine."""

    def __init__(self, current: ControllerState, target: ControllerState) -> None:
        """Initialize transition error."""
        super().__init__(f"Invalid transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class RestartBudget:
    """Bounded number of automatic restarts within a sliding time window."""

    def __init__(
        self,
        max_restarts: int = 3,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the budget.

        Args:
            max_restarts: Restarts allowed inside one window.
            window_seconds: Length of the sliding window.
            clock: Monotonic time source.

        """
        self.max_restarts = max_restarts
        self.window_seconds = window_seconds
        self._clock = clock
        self._restarts: deque[float] = deque()

    def _expire(self, now: float) -> None:
        while self._restarts and now - self._restarts[0] > self.window_seconds:
            self._restarts.popleft()

    def try_acquire(self) -> bool:
        """Consume one restart if the window allows it."""
        now = self._clock()
        self._expire(now)
        if len(self._restarts) >= self.max_restarts:
            logger.warning(
                "Restart budget exhausted",
                max_restarts=self.max_restarts,
                window_seconds=self.window_seconds,
            )
            return False
        self._restarts.append(now)
        return True

    @property
    def remaining(self) -> int:
        self._expire(self._clock())
        return max(0, self.max_restarts - len(self._restarts))

    def reset(self) -> None:
        self._restarts.clear()

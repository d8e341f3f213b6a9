# pyright: strict
"""Lifecycle state machine for the supervised pipeline."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field

from loguru import logger

from .errors import InvalidTransitionError
from .types import ControllerState

ALLOWED_TRANSITIONS: dict[ControllerState, frozenset[ControllerState]] = {
    ControllerState.STOPPED: frozenset(
        {ControllerState.BUILDING, ControllerState.TERMINATING}
    ),
    ControllerState.BUILDING: frozenset(
        {
            ControllerState.RUNNING,
            ControllerState.DEGRADED,
            ControllerState.STOPPED,
            ControllerState.TERMINATING,
        }
    ),
    ControllerState.RUNNING: frozenset(
        {
            ControllerState.RESTARTING,
            ControllerState.DEGRADED,
            ControllerState.TERMINATING,
        }
    ),
    ControllerState.DEGRADED: frozenset(
        {ControllerState.RESTARTING, ControllerState.TERMINATING}
    ),
    ControllerState.RESTARTING: frozenset(
        {
            ControllerState.RUNNING,
            ControllerState.DEGRADED,
            ControllerState.STOPPED,
            ControllerState.TERMINATING,
        }
    ),
    ControllerState.TERMINATING: frozenset(),
}


@dataclass(frozen=True)
class StateTransition:
    """A recorded state change."""

    source: ControllerState
    target: ControllerState
    reason: str = ""
    timestamp: float = field(default_factory=time.time)


class StateMachine:
    """Validates and records controller state transitions.

    Not thread-safe on its own: the supervisor only calls it while holding the
    controller lock.
    """

    def __init__(
        self,
        initial: ControllerState = ControllerState.STOPPED,
        history_size: int = 32,
    ) -> None:
        self._state = initial
        self._history: deque[StateTransition] = deque(maxlen=history_size)

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        return list(self._history)

    def can_transition(self, target: ControllerState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: ControllerState, reason: str = "") -> StateTransition:
        """Move to ``target`` or raise ``InvalidTransitionError``."""
        if not self.can_transition(target):
            raise InvalidTransitionError(self._state, target)

        record = StateTransition(self._state, target, reason)
        self._state = target
        self._history.append(record)

        logger.info(
            "Controller state changed",
            previous=record.source.value,
            state=target.value,
            reason=reason,
        )
        return record

# pyright: strict
"""Type definitions for the reconciliation controller."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from camtx.models import StreamConfig

type Generation = int
type FrameCallback = Callable[[int], None]


class ControllerState(Enum):
    """Lifecycle states of the supervised pipeline."""

    STOPPED = "stopped"
    BUILDING = "building"
    RUNNING = "running"
    RESTARTING = "restarting"
    DEGRADED = "degraded"
    TERMINATING = "terminating"


class FieldAction(Enum):
    """What a change to a configuration field requires from the running pipeline."""

    SINK_PATCH = "sink_patch"
    """Applied in place on the transmission element, the stream keeps flowing."""

    REBUILD = "rebuild"
    """Changes graph topology or negotiated caps, needs a full teardown and build."""


FIELD_ACTIONS: dict[str, FieldAction] = {
    "host": FieldAction.SINK_PATCH,
    "port": FieldAction.SINK_PATCH,
    "source": FieldAction.REBUILD,
    "device": FieldAction.REBUILD,
    "encoder": FieldAction.REBUILD,
    "width": FieldAction.REBUILD,
    "height": FieldAction.REBUILD,
    "framerate": FieldAction.REBUILD,
    "autofocus": FieldAction.REBUILD,
    "lens_position": FieldAction.REBUILD,
}


def action_for(field_name: str) -> FieldAction:
    """Return the action a field change requires; unknown fields need a rebuild."""
    return FIELD_ACTIONS.get(field_name, FieldAction.REBUILD)


@dataclass(frozen=True)
class ConfigDelta:
    """The set of fields that differ between two configuration snapshots."""

    changed: frozenset[str] = frozenset()

    @classmethod
    def between(cls, old: StreamConfig, new: StreamConfig) -> ConfigDelta:
        """Compute the delta from ``old`` to ``new``."""
        return cls(
            frozenset(
                name
                for name in type(old).model_fields
                if getattr(old, name) != getattr(new, name)
            )
        )

    @property
    def sink_fields(self) -> frozenset[str]:
        return frozenset(f for f in self.changed if action_for(f) is FieldAction.SINK_PATCH)

    @property
    def structural_fields(self) -> frozenset[str]:
        return frozenset(f for f in self.changed if action_for(f) is FieldAction.REBUILD)

    @property
    def is_empty(self) -> bool:
        return not self.changed

    @property
    def requires_rebuild(self) -> bool:
        return bool(self.structural_fields)

    @property
    def is_sink_only(self) -> bool:
        return bool(self.changed) and not self.structural_fields


@dataclass(frozen=True)
class FieldRejection:
    """A field of an update that failed validation and was not applied."""

    field: str
    value: Any
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "value": self.value, "reason": self.reason}


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of merging a partial update into the configuration store."""

    delta: ConfigDelta
    rejections: tuple[FieldRejection, ...]
    config: StreamConfig


class ReconcileAction(Enum):
    """What the supervisor did in response to a configuration delta."""

    NONE = "none"
    PATCHED = "patched"
    REBUILT = "rebuilt"
    SCHEDULED = "scheduled"
    DEFERRED = "deferred"
    FAILED = "failed"


class FaultDecision(Enum):
    """Decision taken for a fatal event coming from the pipeline."""

    IGNORE = "ignore"
    RESTART = "restart"
    TERMINATE = "terminate"


class EventKind(Enum):
    """Classes of events emitted by a pipeline's event source."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    END_OF_STREAM = "eos"
    STATE_CHANGED = "state_changed"


@dataclass(frozen=True)
class BackendEvent:
    """An event drained from a pipeline's event source."""

    kind: EventKind
    """Event class."""

    source: str = "pipeline"
    """Name of the element that posted the event."""

    message: str = ""
    """Human-readable message."""

    debug: str | None = None
    """Backend debug details, if any."""

    old_state: str | None = None
    """Previous element state for STATE_CHANGED events."""

    new_state: str | None = None
    """New element state for STATE_CHANGED events."""

    from_pipeline: bool = False
    """Whether the event was posted by the top-level pipeline itself."""

    timestamp: float = field(default_factory=time.time)

    @property
    def is_fatal(self) -> bool:
        return self.kind in (EventKind.ERROR, EventKind.END_OF_STREAM)

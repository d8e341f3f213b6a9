"""Reconciliation controller for the camera transmission pipeline."""

from .api import ControlAPI
from .backend import EventSource, PipelineBackend, PipelineHandle
from .errors import (
    BuildError,
    ControllerError,
    EncoderUnavailableError,
    InvalidTransitionError,
    PatchError,
    RecoveryPolicy,
    RestartBudget,
    RuntimeFault,
    TeardownTimeoutError,
)
from .monitor import EventMonitor
from .persistence import ConfigFile, resolve_config_path
from .state import StateMachine
from .stats import StatsRegister, StreamStatsView
from .store import ConfigStore, validate_document
from .supervisor import PipelineSupervisor
from .types import (
    BackendEvent,
    ConfigDelta,
    ControllerState,
    EventKind,
    FaultDecision,
    FieldAction,
    FieldRejection,
    ReconcileAction,
)

__all__ = [
    "BackendEvent",
    "BuildError",
    "ConfigDelta",
    "ConfigFile",
    "ConfigStore",
    "ControlAPI",
    "ControllerError",
    "ControllerState",
    "EncoderUnavailableError",
    "EventKind",
    "EventMonitor",
    "EventSource",
    "FaultDecision",
    "FieldAction",
    "FieldRejection",
    "InvalidTransitionError",
    "PatchError",
    "PipelineBackend",
    "PipelineHandle",
    "PipelineSupervisor",
    "ReconcileAction",
    "RecoveryPolicy",
    "RestartBudget",
    "RuntimeFault",
    "StateMachine",
    "StatsRegister",
    "StreamStatsView",
    "TeardownTimeoutError",
    "validate_document",
]

# pyright: strict
"""Configuration store holding the desired pipeline configuration."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from camtx.models.stream_config import FIELD_ALIASES, FIELD_TYPES, StreamConfig

from .types import ApplyResult, ConfigDelta, FieldRejection

_FIELD_ADAPTERS: dict[str, TypeAdapter[Any]] = {
    name: TypeAdapter(field_type) for name, field_type in FIELD_TYPES.items()
}


def _first_error_message(exc: ValidationError) -> str:
    errors = exc.errors()
    return str(errors[0]["msg"]) if errors else str(exc)


def validate_document(
    document: Mapping[str, Any],
) -> tuple[dict[str, Any], list[FieldRejection]]:
    """Validate every field of a partial configuration document independently.

    A bad field never invalidates the others: it is reported as a rejection and
    left out of the accepted values.

    Args:
        document: Decoded JSON object with any subset of configuration keys.

    Returns:
        The accepted values keyed by canonical field name, and the rejections.

    """
    accepted: dict[str, Any] = {}
    rejections: list[FieldRejection] = []

    for key, value in document.items():
        name = FIELD_ALIASES.get(key, key)
        adapter = _FIELD_ADAPTERS.get(name)
        if adapter is None:
            rejections.append(FieldRejection(key, value, "unknown field"))
            continue
        # The canonical key wins over its alias when both are present.
        if name != key and name in document:
            continue
        try:
            accepted[name] = adapter.validate_python(value)
        except ValidationError as e:
            rejections.append(FieldRejection(key, value, _first_error_message(e)))

    return accepted, rejections


class ConfigStore:
    """Thread-safe holder of the single desired configuration.

    The store owns the controller lock. The pipeline supervisor shares it so the
    configuration, the controller state and the pipeline handle change as one
    unit.
    """

    def __init__(
        self,
        initial: StreamConfig | None = None,
        lock: threading.RLock | None = None,
    ) -> None:
        self._config = initial or StreamConfig()
        self._lock = lock or threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def read(self) -> StreamConfig:
        """Return the current configuration snapshot.

        Snapshots are frozen, so the returned object is independent of later
        updates.
        """
        with self._lock:
            return self._config

    def apply(self, partial: Mapping[str, Any]) -> ApplyResult:
        """Validate and merge a partial update.

        Args:
            partial: Decoded JSON object with any subset of configuration keys.

        Returns:
            The fields that actually changed, the rejected fields and the new
            snapshot.

        """
        accepted, rejections = validate_document(partial)

        with self._lock:
            previous = self._config
            updated = previous.model_copy(update=accepted) if accepted else previous
            delta = ConfigDelta.between(previous, updated)
            if not delta.is_empty:
                self._config = updated

        if rejections:
            logger.warning(
                "Configuration update had rejected fields",
                rejected=[r.field for r in rejections],
            )
        if not delta.is_empty:
            logger.info(
                "Configuration updated",
                changed=sorted(delta.changed),
                rebuild=delta.requires_rebuild,
            )

        return ApplyResult(delta=delta, rejections=tuple(rejections), config=updated)

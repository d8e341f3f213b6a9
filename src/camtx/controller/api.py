# pyright: strict
"""Transport-independent control surface used by the HTTP routes."""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

from loguru import logger

from .errors import BuildError
from .types import ReconcileAction

if TYPE_CHECKING:
    from .backend import PipelineBackend
    from .persistence import ConfigFile
    from .stats import StatsRegister
    from .store import ConfigStore
    from .supervisor import PipelineSupervisor

INVALID_JSON = {"error": "Invalid JSON"}


class ControlAPI:
    """Query and update operations on the running controller.

    Every method returns plain JSON-ready values so the web layer stays a thin
    adapter. Configuration updates never surface pipeline failures as HTTP
    errors: those are reported in the logs and in ``health()``.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: ConfigStore,
        supervisor: PipelineSupervisor,
        stats: StatsRegister,
        backend: PipelineBackend,
        *,
        config_file: ConfigFile | None = None,
        defer_rebuild: bool = True,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._stats = stats
        self._backend = backend
        self._config_file = config_file
        self.defer_rebuild = defer_rebuild
        self._start_time = time.time()

    def health(self) -> dict[str, Any]:
        """Report liveness plus the supervisor status."""
        return {
            "status": "ok",
            "service": "camtx",
            "timestamp": time.time(),
            "uptime_seconds": round(time.time() - self._start_time, 3),
            **self._supervisor.status(),
        }

    def get_config(self) -> dict[str, Any]:
        return self._store.read().to_dict()

    def get_stats(self) -> dict[str, Any]:
        target = self._store.read().framerate
        return self._stats.snapshot(target_framerate=target).to_dict()

    def list_devices(self) -> dict[str, Any]:
        return {"devices": self._backend.list_devices()}

    def list_encoders(self) -> dict[str, Any]:
        return {"encoders": self._backend.list_encoders()}

    def describe_device(self, name: str) -> dict[str, Any]:
        """Return the resolutions a capture device supports."""
        return {
            "device": name,
            "supported_resolutions": self._backend.probe_resolutions(name),
        }

    def discover(self) -> dict[str, Any]:
        """Combined camera and encoder listing served at ``/get``."""
        return {
            "cameras": self._backend.list_devices(),
            "encoders": self._backend.list_encoders(),
        }

    def describe_camera(self, name: str) -> dict[str, Any]:
        return {
            "camera": name,
            "supported_resolutions": self._backend.probe_resolutions(name),
        }

    def update_config(self, body: bytes | str) -> tuple[int, dict[str, Any]]:
        """Apply a partial configuration update received as a raw JSON body.

        Returns:
            The HTTP status code and the response document.

        """
        try:
            document = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Rejected configuration update", error=str(e))
            return 400, dict(INVALID_JSON)

        if not isinstance(document, dict):
            logger.warning(
                "Rejected configuration update, body is not an object",
                body_type=type(document).__name__,
            )
            return 400, dict(INVALID_JSON)

        result = self._store.apply(document)  # type: ignore[arg-type]

        if not result.delta.is_empty and self._config_file is not None:
            # Save the latest contents so a racing update cannot be overwritten.
            with self._store.lock:
                self._config_file.save(self._store.read())

        try:
            action = self._supervisor.reconcile(
                result.delta,
                result.config,
                defer_rebuild=self.defer_rebuild,
            )
        except BuildError as e:
            logger.error("Pipeline rebuild after configuration update failed", error=str(e))
            action = ReconcileAction.FAILED

        return 200, {
            "status": "configuration updated",
            "changed": sorted(result.delta.changed),
            "rejected": [r.to_dict() for r in result.rejections],
            "action": action.value,
        }

# pyright: strict
"""Contract between the supervisor and a media pipeline backend."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from camtx.models import StreamConfig

    from .types import BackendEvent, FrameCallback

type PipelineHandle = Any


class EventSource(Protocol):
    """Pollable stream of events from one pipeline handle."""

    def poll(self, timeout: float) -> BackendEvent | None:
        """Wait up to ``timeout`` seconds for the next event."""
        ...

    def close(self) -> None:
        """Stop delivering events and wake up any pending ``poll``."""
        ...


class PipelineBackend(Protocol):
    """Builds and controls capture -> encode -> payload -> transmit graphs.

    Implementations must leave nothing running when ``build`` raises, and
    ``destroy`` must never block.
    """

    def build(self, config: StreamConfig) -> PipelineHandle:
        """Construct and start a pipeline.

        Raises:
            EncoderUnavailableError: The encoder element does not exist.
            BuildError: Any other construction, link or start failure.

        """
        ...

    def patch_sink(self, handle: PipelineHandle, host: str, port: int) -> None:
        """Point the transmission element at a new destination (raises PatchError)."""
        ...

    def stop(self, handle: PipelineHandle, timeout: float) -> None:
        """Stop gracefully and release the pipeline (raises TeardownTimeoutError)."""
        ...

    def destroy(self, handle: PipelineHandle) -> None:
        """Forcefully drop the pipeline without waiting for the backend."""
        ...

    def events(self, handle: PipelineHandle) -> EventSource:
        """Return the event source of a live pipeline."""
        ...

    def attach_frame_probe(self, handle: PipelineHandle, callback: FrameCallback) -> None:
        """Call ``callback(byte_size)`` for every buffer reaching the sink."""
        ...

    def list_devices(self) -> list[str]:
        """Enumerate capture devices."""
        ...

    def list_encoders(self) -> list[str]:
        """Enumerate usable encoders."""
        ...

    def probe_resolutions(self, device: str) -> list[dict[str, Any]]:
        """Describe the resolutions a capture device supports."""
        ...

# pyright: strict
"""Stream statistics register fed by the pipeline's per-buffer probe."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

# Frame arrival timestamps kept for the measured frame rate.
FRAME_WINDOW_SIZE = 120

# Efficiency is shown as a percentage of the configured frame rate.
MIN_EFFICIENCY_PERCENT = 0.0
MAX_EFFICIENCY_PERCENT = 100.0

LOG_EVERY_N_FRAMES = 600


@dataclass(frozen=True)
class StreamStatsView:
    """Point-in-time view of stream statistics with derived rates."""

    total_bytes: int
    frame_count: int
    elapsed_seconds: float
    current_bitrate_kbps: float
    average_frame_bytes: float
    measured_framerate: float | None
    target_framerate: int | None
    efficiency_percent: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_bytes": self.total_bytes,
            "frame_count": self.frame_count,
            "current_bitrate_kbps": round(self.current_bitrate_kbps, 3),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "average_frame_bytes": round(self.average_frame_bytes, 1),
            "measured_framerate": (
                round(self.measured_framerate, 2)
                if self.measured_framerate is not None
                else None
            ),
            "target_framerate": self.target_framerate,
            "efficiency_percent": (
                round(self.efficiency_percent, 1)
                if self.efficiency_percent is not None
                else None
            ),
        }


class StatsRegister:
    """Cumulative byte and frame counters for the live pipeline.

    Only counters and timestamps are stored; every rate is derived when a
    snapshot is taken. The register has its own lock because it is updated at
    frame rate from the backend's streaming thread.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        window_size: int = FRAME_WINDOW_SIZE,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._total_bytes = 0
        self._frame_count = 0
        self._start = clock()
        self._arrivals: deque[float] = deque(maxlen=window_size)

    def record_frame(self, byte_size: int) -> None:
        """Count one buffer of ``byte_size`` bytes leaving the pipeline."""
        now = self._clock()
        with self._lock:
            self._total_bytes += byte_size
            self._frame_count += 1
            self._arrivals.append(now)
            frame_count = self._frame_count
            total_bytes = self._total_bytes

        if frame_count % LOG_EVERY_N_FRAMES == 0:
            logger.debug(
                "Streaming",
                frame_count=frame_count,
                frame_bytes=byte_size,
                total_bytes=total_bytes,
            )

    def reset(self) -> None:
        """Zero all counters and restart the clock."""
        with self._lock:
            self._total_bytes = 0
            self._frame_count = 0
            self._start = self._clock()
            self._arrivals.clear()
        logger.debug("Stream statistics reset")

    def snapshot(self, target_framerate: int | None = None) -> StreamStatsView:
        """Compute a consistent view of the counters and the derived rates.

        Args:
            target_framerate: Configured frame rate used for the efficiency ratio.

        """
        with self._lock:
            now = self._clock()
            total_bytes = self._total_bytes
            frame_count = self._frame_count
            elapsed = max(0.0, now - self._start)
            arrivals = list(self._arrivals)

        bitrate_kbps = (total_bytes * 8.0) / (elapsed * 1000.0) if elapsed > 0 else 0.0
        average_frame = total_bytes / frame_count if frame_count else 0.0

        measured: float | None = None
        if len(arrivals) >= 2:
            span = arrivals[-1] - arrivals[0]
            if span > 0:
                measured = (len(arrivals) - 1) / span

        efficiency: float | None = None
        if measured is not None and target_framerate:
            efficiency = min(
                MAX_EFFICIENCY_PERCENT,
                max(MIN_EFFICIENCY_PERCENT, measured / target_framerate * 100.0),
            )

        return StreamStatsView(
            total_bytes=total_bytes,
            frame_count=frame_count,
            elapsed_seconds=elapsed,
            current_bitrate_kbps=bitrate_kbps,
            average_frame_bytes=average_frame,
            measured_framerate=measured,
            target_framerate=target_framerate,
            efficiency_percent=efficiency,
        )

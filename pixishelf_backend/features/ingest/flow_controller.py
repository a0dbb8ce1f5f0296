"""
Flush timing, adaptive concurrency and memory backpressure for one scan.
"""
from __future__ import annotations

import asyncio
import gc
import os
import sys
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from ... import config
from ...shared import get_logger
from .progress import CancellationToken

logger = get_logger(__name__)

if sys.platform != "win32":
    import resource
else:
    resource = None

MIN_SAMPLES = 3


@dataclass(frozen=True)
class FlowSettings:
    flush_threshold: int = config.FLUSH_THRESHOLD
    flush_interval_s: float = config.FLUSH_INTERVAL_S
    concurrency_initial: int = config.CONCURRENCY_INITIAL
    concurrency_max: int = config.CONCURRENCY_MAX
    window_size: int = config.CONCURRENCY_WINDOW
    high_load_ms: float = config.HIGH_LOAD_MS
    low_load_ms: float = config.LOW_LOAD_MS
    memory_budget_mb: int = config.MEMORY_BUDGET_MB
    memory_high_water: float = config.MEMORY_HIGH_WATER
    memory_low_water: float = config.MEMORY_LOW_WATER
    memory_poll_interval_s: float = config.MEMORY_POLL_INTERVAL_S


def process_rss_bytes() -> int | None:
    """Resident set size of this process, or None when it cannot be read."""
    try:
        with open("/proc/self/statm", "rb") as fh:
            pages = int(fh.read().split()[1])
        return pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    if resource is None:
        return None
    try:
        peak = int(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    except (OSError, ValueError):
        return None
    # ru_maxrss is bytes on macOS, kilobytes elsewhere.
    return peak if sys.platform == "darwin" else peak * 1024


class FlowController:
    """
    Decides when the scan flushes staged rows and how many artwork tasks run
    at once.

    Concurrency follows an additive increase / additive decrease rule over a
    sliding window of task durations. Memory pressure uses hysteresis: it turns
    on above the high-water fraction of the budget and off only below the
    low-water fraction.
    """

    def __init__(
        self,
        settings: FlowSettings | None = None,
        *,
        memory_probe: Callable[[], int | None] = process_rss_bytes,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or FlowSettings()
        self._memory_probe = memory_probe
        self._clock = clock
        self._max = max(1, int(self.settings.concurrency_max))
        self._concurrency = min(self._max, max(1, int(self.settings.concurrency_initial)))
        self._durations: deque[float] = deque(maxlen=max(MIN_SAMPLES, int(self.settings.window_size)))
        self._staged = 0
        self._last_flush = clock()
        self._memory_constrained = False
        self.flushes = 0
        self.adjustments = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def staged(self) -> int:
        return self._staged

    def record_staged(self, n: int = 1) -> None:
        self._staged += max(0, int(n))

    def reset_after_flush(self) -> None:
        self._staged = 0
        self._last_flush = self._clock()
        self.flushes += 1

    def seconds_since_flush(self) -> float:
        return self._clock() - self._last_flush

    def should_flush(self) -> bool:
        if self._staged <= 0:
            return False
        if self._staged >= self.settings.flush_threshold:
            return True
        if self.seconds_since_flush() >= self.settings.flush_interval_s:
            return True
        return self.is_memory_constrained()

    def memory_usage_ratio(self) -> float | None:
        used = self._memory_probe()
        budget = int(self.settings.memory_budget_mb) * 1024 * 1024
        if used is None or budget <= 0:
            return None
        return used / budget

    def is_memory_constrained(self) -> bool:
        ratio = self.memory_usage_ratio()
        if ratio is None:
            return self._memory_constrained
        if self._memory_constrained:
            if ratio < self.settings.memory_low_water:
                self._memory_constrained = False
                logger.info("Memory pressure cleared (%.0f%% of budget)", ratio * 100)
        elif ratio > self.settings.memory_high_water:
            self._memory_constrained = True
            logger.warning("Memory pressure (%.0f%% of budget); throttling ingestion", ratio * 100)
        return self._memory_constrained

    def next_concurrency_level(self, observed_task_duration_ms: float) -> int:
        """Record one task duration and return the concurrency to use next."""
        self._durations.append(max(0.0, float(observed_task_duration_ms)))
        if len(self._durations) < MIN_SAMPLES:
            return self._concurrency
        average = sum(self._durations) / len(self._durations)
        previous = self._concurrency
        if average > self.settings.high_load_ms:
            self._concurrency = max(1, self._concurrency - 1)
        elif average < self.settings.low_load_ms and not self.is_memory_constrained():
            self._concurrency = min(self._max, self._concurrency + 1)
        if self._concurrency != previous:
            self.adjustments += 1
            logger.debug("Concurrency %d -> %d (avg task %.1fms)", previous, self._concurrency, average)
        return self._concurrency

    async def wait_for_memory(self, token: CancellationToken | None = None, max_wait_s: float = 30.0) -> bool:
        """
        Block until memory pressure clears, the token is cancelled or
        `max_wait_s` passes. Returns True when memory is available again.
        """
        if not self.is_memory_constrained():
            return True
        deadline = self._clock() + max(0.0, float(max_wait_s))
        gc.collect()
        while self.is_memory_constrained():
            if token is not None and token.cancelled:
                return False
            if self._clock() >= deadline:
                logger.warning("Memory still constrained after %.1fs; continuing", max_wait_s)
                return False
            await asyncio.sleep(self.settings.memory_poll_interval_s)
            gc.collect()
        return True

    def snapshot(self) -> dict[str, object]:
        durations = list(self._durations)
        return {
            "concurrency": self._concurrency,
            "staged": self._staged,
            "flushes": self.flushes,
            "adjustments": self.adjustments,
            "memory_constrained": self._memory_constrained,
            "avg_task_ms": round(sum(durations) / len(durations), 2) if durations else None,
        }

"""
Cancellation token and weighted progress reporting for scans.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from typing import Any, Union

from ...shared import get_logger
from .models import ScanProgress, ScanState

logger = get_logger(__name__)

ProgressSink = Callable[[ScanProgress], Union[None, Awaitable[None]]]

# Percentage band (start, end) owned by each phase.
PHASE_BANDS: dict[ScanState, tuple[float, float]] = {
    ScanState.IDLE: (0.0, 0.0),
    ScanState.DISCOVERING: (0.0, 8.0),
    ScanState.RESOLVING: (8.0, 10.0),
    ScanState.PROCESSING: (10.0, 90.0),
    ScanState.CLEANUP: (90.0, 99.0),
    ScanState.COMPLETE: (100.0, 100.0),
}


class ScanCancelled(Exception):
    """Raised by a progress sink to ask the running scan to stop."""


class CancellationToken:
    """Cooperative cancellation flag polled by the scan loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ProgressTracker:
    """
    Maps per-phase counters onto a monotonic 0-100 percentage and forwards
    events to the caller's sink.

    The sink may be sync or async. Raising `ScanCancelled` from it cancels the
    scan's token; any other sink error is logged and ignored.
    """

    def __init__(
        self,
        sink: ProgressSink | None,
        token: CancellationToken,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._token = token
        self._clock = clock
        self._percentage = 0.0
        self._processing_started: float | None = None
        self.last: ScanProgress | None = None
        self.events = 0

    @property
    def percentage(self) -> float:
        return self._percentage

    def _compute(self, phase: ScanState, current: int | None, total: int | None) -> float:
        band = PHASE_BANDS.get(phase)
        if band is None:
            return self._percentage
        start, end = band
        if current is not None and total:
            fraction = min(1.0, max(0.0, current / total))
        else:
            fraction = 0.0
        return start + (end - start) * fraction

    def _eta(self, phase: ScanState, current: int | None, total: int | None) -> float | None:
        if phase != ScanState.PROCESSING:
            return None
        if self._processing_started is None:
            self._processing_started = self._clock()
            return None
        if not current or not total or current >= total:
            return 0.0 if total and current is not None and current >= total else None
        elapsed = self._clock() - self._processing_started
        return round(elapsed / current * (total - current), 1)

    async def emit(
        self,
        phase: ScanState,
        message: str,
        *,
        current: int | None = None,
        total: int | None = None,
    ) -> ScanProgress:
        self._percentage = max(self._percentage, self._compute(phase, current, total))
        event = ScanProgress(
            phase=phase,
            message=message,
            current=current,
            total=total,
            percentage=round(self._percentage, 1),
            estimated_seconds_remaining=self._eta(phase, current, total),
        )
        self.last = event
        self.events += 1
        if self._sink is None:
            return event
        try:
            out: Any = self._sink(event)
            if inspect.isawaitable(out):
                await out
        except ScanCancelled as exc:
            logger.info("Scan cancellation requested by progress sink")
            self._token.cancel(str(exc) or "cancelled by progress sink")
        except Exception as exc:
            logger.warning("Progress sink failed: %s", exc)
        return event

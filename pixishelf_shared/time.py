"""
Time utilities for timestamps and performance measurement.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager


def now() -> float:
    """Get current timestamp in seconds (float)."""
    return time.time()


def ms() -> int:
    """Get current timestamp in milliseconds (int)."""
    return int(time.time() * 1000)


def elapsed_ms(start: float) -> float:
    """Milliseconds elapsed since a `time.perf_counter()` reading."""
    return (time.perf_counter() - start) * 1000.0


def format_timestamp(ts: float | None = None) -> str:
    """
    Format timestamp as ISO 8601 string.

    Args:
        ts: Timestamp in seconds (default: now())

    Returns:
        ISO 8601 formatted string (e.g., "2025-12-29T19:30:45")
    """
    if ts is None:
        ts = now()
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(ts))


@contextmanager
def timer(label: str, logger: logging.Logger) -> Iterator[None]:
    """
    Context manager for timing operations at DEBUG level.

    Usage:
        with timer("cleanup sweep", logger):
            await store.cleanup_orphans()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.debug("%s took %.1fms", label, elapsed_ms(start))

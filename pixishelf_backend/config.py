"""
Configuration for PixiShelf.

Values are read once from the environment at import time. Scan-scoped settings
are copied into `FlowSettings` / `ScanSettings` so tests can build them directly.
"""
import logging
import os
from pathlib import Path

from .utils import env_bool

logger = logging.getLogger(__name__)


def _env_raw(*names: str, default: str | None = None) -> str | None:
    for name in names:
        if not name:
            continue
        try:
            val = os.getenv(name)
        except Exception:
            val = None
        if val is not None and str(val).strip() != "":
            return str(val).strip()
    return default


def _env_int(default: int, *names: str, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_float(default: float, *names: str, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid float for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_bool(default: bool, *names: str) -> bool:
    for name in names:
        if not name:
            continue
        try:
            if name in os.environ:
                return env_bool(name, default)
        except Exception:
            continue
    return default


def _resolve_data_dir() -> Path:
    env_path = _env_raw("PIXISHELF_DATA_DIR")
    if env_path:
        try:
            return Path(env_path).expanduser().resolve()
        except (OSError, RuntimeError):
            logger.warning("Failed to resolve PIXISHELF_DATA_DIR: %s, using fallback", env_path)
    return (Path.home() / ".pixishelf").resolve()


DATA_DIR_PATH = _resolve_data_dir()
DATA_DIR = str(DATA_DIR_PATH)

DB_PATH = _env_raw("PIXISHELF_DB_PATH", default=str(DATA_DIR_PATH / "library.sqlite")) or str(DATA_DIR_PATH / "library.sqlite")

# Default scan root; the stored `scan_path` setting takes precedence.
SCAN_PATH = _env_raw("PIXISHELF_SCAN_PATH")

# Database
DB_TIMEOUT = _env_float(30.0, "PIXISHELF_DB_TIMEOUT", min_value=1.0, max_value=300.0)
DB_MAX_CONNECTIONS = _env_int(4, "PIXISHELF_DB_MAX_CONNECTIONS", min_value=1, max_value=64)
DB_QUERY_TIMEOUT = _env_float(60.0, "PIXISHELF_DB_QUERY_TIMEOUT", min_value=1.0, max_value=600.0)
DB_BATCH_TIMEOUT = _env_float(120.0, "PIXISHELF_DB_BATCH_TIMEOUT", min_value=1.0, max_value=3600.0)
TO_THREAD_TIMEOUT_S = _env_float(30.0, "PIXISHELF_TO_THREAD_TIMEOUT", min_value=1.0, max_value=300.0)

# Scan
SCAN_MAX_DEPTH = _env_int(8, "PIXISHELF_SCAN_MAX_DEPTH", min_value=1, max_value=64)
SCAN_CHUNK_SIZE = _env_int(100, "PIXISHELF_SCAN_CHUNK_SIZE", min_value=1, max_value=10_000)
SCAN_EXISTS_QUERY_BATCH = _env_int(500, "PIXISHELF_SCAN_EXISTS_QUERY_BATCH", min_value=1, max_value=900)
CACHE_WARM_MAX_ROWS = _env_int(50_000, "PIXISHELF_CACHE_WARM_MAX_ROWS", min_value=0, max_value=5_000_000)
PROBE_DIMENSIONS = _env_bool(True, "PIXISHELF_PROBE_DIMENSIONS")

# Flow control
FLUSH_THRESHOLD = _env_int(50, "PIXISHELF_FLUSH_THRESHOLD", min_value=1, max_value=100_000)
FLUSH_INTERVAL_S = _env_float(5.0, "PIXISHELF_FLUSH_INTERVAL_S", min_value=0.1, max_value=3600.0)
CONCURRENCY_INITIAL = _env_int(4, "PIXISHELF_CONCURRENCY_INITIAL", min_value=1, max_value=64)
CONCURRENCY_MAX = _env_int(8, "PIXISHELF_CONCURRENCY_MAX", min_value=1, max_value=64)
CONCURRENCY_WINDOW = _env_int(10, "PIXISHELF_CONCURRENCY_WINDOW", min_value=3, max_value=1000)
HIGH_LOAD_MS = _env_float(1000.0, "PIXISHELF_HIGH_LOAD_MS", min_value=1.0, max_value=600_000.0)
LOW_LOAD_MS = _env_float(500.0, "PIXISHELF_LOW_LOAD_MS", min_value=0.0, max_value=600_000.0)
MEMORY_BUDGET_MB = _env_int(1024, "PIXISHELF_MEMORY_BUDGET_MB", min_value=64, max_value=1_048_576)
MEMORY_HIGH_WATER = _env_float(0.8, "PIXISHELF_MEMORY_HIGH_WATER", min_value=0.1, max_value=1.0)
MEMORY_LOW_WATER = _env_float(0.6, "PIXISHELF_MEMORY_LOW_WATER", min_value=0.05, max_value=1.0)
MEMORY_WAIT_MAX_S = _env_float(30.0, "PIXISHELF_MEMORY_WAIT_MAX_S", min_value=0.0, max_value=3600.0)
MEMORY_POLL_INTERVAL_S = _env_float(0.1, "PIXISHELF_MEMORY_POLL_INTERVAL_S", min_value=0.01, max_value=10.0)

if MEMORY_LOW_WATER >= MEMORY_HIGH_WATER:
    logger.warning(
        "PIXISHELF_MEMORY_LOW_WATER=%s must be below PIXISHELF_MEMORY_HIGH_WATER=%s, using 0.75x high water",
        MEMORY_LOW_WATER,
        MEMORY_HIGH_WATER,
    )
    MEMORY_LOW_WATER = MEMORY_HIGH_WATER * 0.75

if CONCURRENCY_INITIAL > CONCURRENCY_MAX:
    CONCURRENCY_INITIAL = CONCURRENCY_MAX

# HTTP
HTTP_HOST = _env_raw("PIXISHELF_HOST", default="127.0.0.1") or "127.0.0.1"
HTTP_PORT = _env_int(8188, "PIXISHELF_PORT", min_value=1, max_value=65535)
API_PREFIX = "/api/v1"
IMAGE_CACHE_MAX_AGE_S = _env_int(31_536_000, "PIXISHELF_IMAGE_CACHE_MAX_AGE", min_value=0, max_value=315_360_000)
# Files up to this size are sent from memory with the handler's own validators.
IMAGE_INLINE_MAX_BYTES = _env_int(32 * 1024 * 1024, "PIXISHELF_IMAGE_INLINE_MAX_BYTES", min_value=0)

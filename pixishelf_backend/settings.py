"""
Application settings persisted in the `settings` table.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from .config import SCAN_PATH
from .path_utils import validate_directory
from .shared import ErrorCode, Result, format_timestamp, get_logger

logger = get_logger(__name__)

_SCAN_PATH_KEY = "scan_path"
_LAST_SCAN_TIME_KEY = "last_scan_time"


class AppSettings:
    """
    Simple settings manager backed by the settings table.
    """

    def __init__(self, db, default_scan_path: str | None = SCAN_PATH):
        self._db = db
        self._lock = asyncio.Lock()
        self._default_scan_path = default_scan_path

    async def _read_setting(self, key: str) -> Optional[str]:
        result = await self._db.aquery("SELECT value FROM settings WHERE key = ?", (key,))
        if not result.ok or not result.data:
            return None
        raw = result.data[0].get("value")
        if isinstance(raw, str):
            return raw.strip()
        return None

    async def _write_setting(self, key: str, value: str) -> Result:
        return await self._db.aexecute(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
            (key, value),
        )

    async def get_scan_path(self) -> str | None:
        """Stored scan root, else the `PIXISHELF_SCAN_PATH` default, else None."""
        async with self._lock:
            raw = await self._read_setting(_SCAN_PATH_KEY)
        if raw:
            return raw
        return self._default_scan_path or None

    async def set_scan_path(self, path: str) -> Result[str]:
        """Validate and persist the scan root (must be an existing directory)."""
        normalized = str(path or "").strip()
        if not normalized:
            return Result.Err(ErrorCode.INVALID_INPUT, "Scan path is required")
        resolved = validate_directory(normalized)
        if resolved is None:
            return Result.Err(ErrorCode.INVALID_INPUT, "Scan path must be an existing directory")
        async with self._lock:
            result = await self._write_setting(_SCAN_PATH_KEY, str(resolved))
        if not result.ok:
            return Result.Err(ErrorCode.DB_ERROR, result.error or "Failed to persist scan path")
        logger.info("Scan path set to %s", resolved)
        return Result.Ok(str(resolved))

    async def get_last_scan_time(self) -> str | None:
        async with self._lock:
            return await self._read_setting(_LAST_SCAN_TIME_KEY)

    async def set_last_scan_time(self, ts: float | None = None) -> Result:
        async with self._lock:
            return await self._write_setting(_LAST_SCAN_TIME_KEY, format_timestamp(ts))


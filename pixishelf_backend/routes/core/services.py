"""
Service management and initialization.
"""
import asyncio
import threading
from typing import Any

from pixishelf_backend.deps import build_services, dispose_services
from pixishelf_backend.shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

_services: dict[str, Any] | None = None
_services_error: str | None = None
_services_lock: asyncio.Lock | None = None
_services_lock_guard = threading.Lock()
_db_path: str | None = None


def _get_services_lock() -> asyncio.Lock:
    global _services_lock
    if _services_lock is not None:
        return _services_lock
    with _services_lock_guard:
        if _services_lock is None:
            _services_lock = asyncio.Lock()
        return _services_lock


def configure_db_path(db_path: str | None) -> None:
    """Database used by the lazy service build; None means the configured default."""
    global _db_path
    _db_path = db_path


def set_services(services: dict[str, Any] | None) -> None:
    """Install an already-built service container (app startup, tests)."""
    global _services, _services_error
    _services = services
    _services_error = None


async def _dispose_services() -> None:
    global _services
    services, _services = _services, None
    await dispose_services(services)


async def _build_services(force: bool = False):
    global _services, _services_error
    async with _get_services_lock():
        if _services and not force:
            return _services

        if force:
            await _dispose_services()

        try:
            services_result = await build_services(_db_path)
        except Exception as exc:
            _services_error = str(exc)
            logger.error("Failed to initialize services: %s", exc, exc_info=True)
            _services = None
            return None

        if not services_result.ok:
            _services_error = services_result.error or "Initialization failed"
            logger.error("Failed to initialize services: %s", _services_error)
            _services = None
            return None

        _services = services_result.data
        _services_error = None
        return _services


async def _require_services() -> tuple[dict[str, Any] | None, Result[Any] | None]:
    services = await _build_services()
    if services:
        return services, None
    return None, Result.Err(
        ErrorCode.SERVICE_UNAVAILABLE,
        "Services are unavailable",
        detail=_services_error or "Initialization failed",
    )


def get_services_error() -> str | None:
    return _services_error

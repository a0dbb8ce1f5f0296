"""
Dependency injection - builds services.
Simple, debug-friendly DI without framework magic.
"""

from __future__ import annotations

from pathlib import Path

from .adapters.db.schema import migrate_schema
from .adapters.db.sqlite import Sqlite
from .config import DB_MAX_CONNECTIONS, DB_PATH, DB_TIMEOUT
from .features.ingest import LibraryStore, ScanOrchestrator, ScanService, ScanSettings
from .settings import AppSettings
from .shared import ErrorCode, Result, get_logger, log_success

logger = get_logger(__name__)


def _resolve_db_path(db_path: str | None) -> str:
    return db_path if db_path is not None else DB_PATH


def _ensure_parent_dir(db_path: str) -> Result[bool]:
    if db_path == ":memory:":
        return Result.Ok(True)
    try:
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("Failed to create data directory for %s: %s", db_path, exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Failed to create data directory: {exc}")
    return Result.Ok(True)


def _init_db_or_error(db_path: str) -> Result[Sqlite]:
    logger.info("Initializing database: %s", db_path)
    try:
        return Result.Ok(Sqlite(db_path, max_connections=DB_MAX_CONNECTIONS, timeout=DB_TIMEOUT))
    except Exception as exc:
        logger.error("Failed to initialize database: %s", exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")


async def _migrate_db_or_error(db: Sqlite) -> Result[bool]:
    migrate_result = await migrate_schema(db)
    if not migrate_result.ok:
        logger.error("Schema migration failed: %s", migrate_result.error)
        return Result.Err(migrate_result.code or ErrorCode.DB_ERROR, f"Failed to initialize database: {migrate_result.error}")
    return Result.Ok(True)


async def build_services(
    db_path: str | None = None,
    *,
    scan_settings: ScanSettings | None = None,
    default_scan_path: str | None = None,
) -> Result[dict]:
    """
    Build all services (DI container).

    Returns:
        Result[dict] with keys `db`, `settings`, `store`, `orchestrator`, `scan`.
    """
    logger.info("Building services...")
    db_path = _resolve_db_path(db_path)
    parent = _ensure_parent_dir(db_path)
    if not parent.ok:
        return Result.Err(parent.code, parent.error or "Failed to create data directory")

    db_res = _init_db_or_error(db_path)
    if not db_res.ok or db_res.data is None:
        return Result.Err(db_res.code or ErrorCode.DB_ERROR, db_res.error or "Failed to initialize database")
    db = db_res.data

    migrated = await _migrate_db_or_error(db)
    if not migrated.ok:
        await db.aclose()
        return Result.Err(migrated.code, migrated.error or "Schema migration failed")

    settings_kwargs = {"default_scan_path": default_scan_path} if default_scan_path is not None else {}
    settings_service = AppSettings(db, **settings_kwargs)
    store = LibraryStore(db)
    orchestrator = ScanOrchestrator(store, scan_settings)
    services = {
        "db": db,
        "settings": settings_service,
        "store": store,
        "orchestrator": orchestrator,
        "scan": ScanService(orchestrator, settings_service),
    }
    log_success(logger, "All services initialized")
    return Result.Ok(services)


async def dispose_services(services: dict | None) -> None:
    """Stop a running scan and close the database."""
    if not services:
        return
    scan = services.get("scan")
    if scan is not None:
        try:
            await scan.shutdown()
        except Exception as exc:
            logger.warning("Error stopping scan service: %s", exc, exc_info=True)
    db = services.get("db")
    if db is not None:
        try:
            await db.aclose()
            logger.debug("Database connection closed successfully")
        except Exception as exc:
            logger.warning("Error closing database: %s", exc, exc_info=True)

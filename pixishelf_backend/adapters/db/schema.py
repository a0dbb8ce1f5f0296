"""
Database schema and migrations.
"""
import re

from ...shared import ErrorCode, Result, get_logger, log_success

logger = get_logger(__name__)

CURRENT_SCHEMA_VERSION = 3
# Schema version history (high-level):
# 1: artists, artworks, images, tags, artwork_tags
# 2: image dimensions, artwork source metadata, settings table
# 3: artworks.directory_created_at

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS artists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    username TEXT,
    user_id TEXT UNIQUE,
    bio TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS artworks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    artist_id INTEGER REFERENCES artists(id) ON DELETE SET NULL,
    image_count INTEGER NOT NULL DEFAULT 0,
    description_length INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    size INTEGER,
    sort_order INTEGER NOT NULL DEFAULT 0,
    artwork_id INTEGER NOT NULL REFERENCES artworks(id) ON DELETE CASCADE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS artwork_tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    artwork_id INTEGER NOT NULL REFERENCES artworks(id) ON DELETE CASCADE,
    tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    UNIQUE (artwork_id, tag_id)
);
"""

# Columns added after v1; applied with ALTER TABLE when missing.
COLUMN_DEFINITIONS = {
    "artworks": [
        ("source_url", "source_url TEXT"),
        ("original_url", "original_url TEXT"),
        ("thumbnail_url", "thumbnail_url TEXT"),
        ("x_restrict", "x_restrict TEXT"),
        ("is_ai_generated", "is_ai_generated INTEGER"),
        ("size", "size TEXT"),
        ("bookmark_count", "bookmark_count INTEGER"),
        ("source_date", "source_date TEXT"),
        ("directory_created_at", "directory_created_at TEXT"),
    ],
    "images": [
        ("width", "width INTEGER"),
        ("height", "height INTEGER"),
    ],
}

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_artworks_artist_id ON artworks(artist_id);
CREATE INDEX IF NOT EXISTS idx_images_artwork_id ON images(artwork_id);
CREATE INDEX IF NOT EXISTS idx_images_artwork_sort ON images(artwork_id, sort_order);
CREATE INDEX IF NOT EXISTS idx_artwork_tags_tag_id ON artwork_tags(tag_id);
CREATE INDEX IF NOT EXISTS idx_artists_name ON artists(name);
CREATE INDEX IF NOT EXISTS idx_artworks_directory_created_at ON artworks(directory_created_at);
"""

_SAFE_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_safe_identifier(value: str) -> bool:
    return bool(value and isinstance(value, str) and _SAFE_IDENT_RE.match(value))


async def _get_table_columns(db, table_name: str) -> Result[list[str]]:
    if not _is_safe_identifier(table_name):
        return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid table name: {table_name}")
    result = await db.aquery(f"PRAGMA table_info('{table_name}')")
    if not result.ok:
        return Result.Err(ErrorCode.DB_ERROR, f"Unable to inspect {table_name}: {result.error}")
    return Result.Ok([row["name"] for row in result.data or []])


async def table_has_column(db, table_name: str, column_name: str) -> bool:
    if not _is_safe_identifier(table_name) or not _is_safe_identifier(column_name):
        logger.warning("Invalid identifier in table_has_column: %s.%s", table_name, column_name)
        return False
    columns_result = await _get_table_columns(db, table_name)
    if not columns_result.ok:
        logger.warning("Unable to determine columns for %s.%s: %s", table_name, column_name, columns_result.error)
        return False
    return column_name in (columns_result.data or [])


async def _ensure_column(db, table_name: str, column_name: str, definition: str) -> Result[bool]:
    columns_result = await _get_table_columns(db, table_name)
    if not columns_result.ok:
        return Result.Err(columns_result.code, columns_result.error or "Column inspection failed")
    if column_name in (columns_result.data or []):
        return Result.Ok(True)
    logger.info("Adding missing column %s.%s", table_name, column_name)
    alter_result = await db.aexecute(f"ALTER TABLE {table_name} ADD COLUMN {definition}")
    if not alter_result.ok:
        return Result.Err(alter_result.code, alter_result.error or "ALTER TABLE failed")
    return Result.Ok(True)


async def ensure_columns_exist(db) -> Result[bool]:
    for table, columns in COLUMN_DEFINITIONS.items():
        for column_name, definition in columns:
            result = await _ensure_column(db, table, column_name, definition)
            if not result.ok:
                logger.error("Failed to ensure column %s.%s: %s", table, column_name, result.error)
                return result
    return Result.Ok(True)


async def _ensure_schema(db) -> Result[bool]:
    result = await db.aexecutescript(SCHEMA_V1)
    if not result.ok:
        logger.error("Failed to ensure base tables: %s", result.error)
        return result

    result = await ensure_columns_exist(db)
    if not result.ok:
        return result

    result = await db.aexecutescript(INDEXES)
    if not result.ok:
        logger.error("Failed to ensure indexes: %s", result.error)
        return result

    version_result = await db.aset_schema_version(CURRENT_SCHEMA_VERSION)
    if not version_result.ok:
        logger.error("Failed to set schema version: %s", version_result.error)
        return Result.Err(version_result.code, version_result.error or "Failed to set schema version")

    return Result.Ok(True)


async def init_schema(db) -> Result[bool]:
    """Create or repair the schema on `db` (a `Sqlite` instance)."""
    return await migrate_schema(db)


async def migrate_schema(db) -> Result[bool]:
    """
    Bring the schema to the current version by ensuring the expected tables,
    columns and indexes exist.
    """
    current_version = await db.aget_schema_version()
    if current_version > CURRENT_SCHEMA_VERSION:
        logger.warning(
            "Database schema version %s is newer than supported %s",
            current_version,
            CURRENT_SCHEMA_VERSION,
        )

    repair_result = await _ensure_schema(db)
    if not repair_result.ok:
        return repair_result

    if current_version != CURRENT_SCHEMA_VERSION:
        log_success(logger, f"Schema migrated from version {current_version} to {CURRENT_SCHEMA_VERSION}")
    else:
        logger.debug("Schema already up to date (%s)", current_version)
    return Result.Ok(True)

import pytest

from pixishelf_backend.adapters.db.schema import CURRENT_SCHEMA_VERSION, migrate_schema, table_has_column
from pixishelf_backend.adapters.db.sqlite import Sqlite


@pytest.mark.asyncio
async def test_migrate_creates_library_tables(tmp_path):
    db = Sqlite(str(tmp_path / "schema.db"))
    res = await migrate_schema(db)
    assert res.ok, res.error
    for table in ("artists", "artworks", "images", "tags", "artwork_tags", "settings", "metadata"):
        assert await db.ahas_table(table)
    assert await db.aget_schema_version() == CURRENT_SCHEMA_VERSION
    await db.aclose()


@pytest.mark.asyncio
async def test_migrate_is_idempotent(tmp_path):
    db = Sqlite(str(tmp_path / "schema.db"))
    assert (await migrate_schema(db)).ok
    assert (await migrate_schema(db)).ok
    assert await table_has_column(db, "images", "width")
    await db.aclose()


@pytest.mark.asyncio
async def test_migrate_heals_missing_columns(tmp_path):
    db = Sqlite(str(tmp_path / "schema.db"))
    await db.aexecutescript(
        """
        CREATE TABLE images (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL UNIQUE,
            size INTEGER,
            sort_order INTEGER NOT NULL DEFAULT 0,
            artwork_id INTEGER NOT NULL
        );
        """
    )
    assert not await table_has_column(db, "images", "height")
    res = await migrate_schema(db)
    assert res.ok, res.error
    assert await table_has_column(db, "images", "height")
    assert await table_has_column(db, "artworks", "source_date")
    assert await table_has_column(db, "artworks", "directory_created_at")
    await db.aclose()

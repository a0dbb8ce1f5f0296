"""
Persistence boundary of the ingestion pipeline.

Lookups by external key, batched insert-or-ignore, single-row insert,
full wipe and orphan cleanup for artists, artworks, images, tags and
artwork_tags. Every method returns a Result; nothing raises to callers.
"""
from __future__ import annotations

from typing import Any

from ...adapters.db.sqlite import Sqlite
from ...config import SCAN_EXISTS_QUERY_BATCH
from ...shared import ErrorCode, Result, get_logger
from ...utils import chunked
from .models import ArtistRow, EntityKind

logger = get_logger(__name__)

INSERT_SQL: dict[str, str] = {
    "artist": "INSERT OR IGNORE INTO artists (name, username, user_id, bio) VALUES (?, ?, ?, ?)",
    "artwork": (
        "INSERT OR IGNORE INTO artworks ("
        "external_id, title, description, artist_id, image_count, description_length, "
        "source_url, original_url, thumbnail_url, x_restrict, is_ai_generated, size, "
        "bookmark_count, source_date, directory_created_at"
        ") VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
    ),
    "tag": "INSERT OR IGNORE INTO tags (name) VALUES (?)",
    "image": (
        "INSERT OR IGNORE INTO images (path, size, width, height, sort_order, artwork_id) "
        "VALUES (?, ?, ?, ?, ?, ?)"
    ),
    "artwork_tag": "INSERT OR IGNORE INTO artwork_tags (artwork_id, tag_id) VALUES (?, ?)",
}

# Referential order for a full wipe.
WIPE_ORDER: tuple[tuple[str, str], ...] = (
    ("artwork_tags", "artwork_tags"),
    ("images", "images"),
    ("artworks", "artworks"),
    ("artists", "artists"),
    ("tags", "tags"),
)


class StoreWriteError(RuntimeError):
    """Raised inside a transaction body to force a rollback."""

    def __init__(self, result: Result[Any]):
        super().__init__(result.error or "Write failed")
        self.result = result


def _artist_from_row(row: dict[str, Any]) -> ArtistRow:
    return ArtistRow(
        id=int(row["id"]),
        name=str(row.get("name") or ""),
        username=row.get("username"),
        user_id=row.get("user_id"),
    )


class LibraryStore:
    """Queries and writes against the library tables of one `Sqlite` database."""

    def __init__(self, db: Sqlite, *, lookup_batch: int = SCAN_EXISTS_QUERY_BATCH):
        self.db = db
        self._lookup_batch = max(1, int(lookup_batch))

    async def _lookup_in(self, base_query: str, column: str, values: list[Any]) -> Result[list[dict[str, Any]]]:
        rows: list[dict[str, Any]] = []
        for part in chunked(list(values), self._lookup_batch):
            res = await self.db.aquery_in(base_query, column, part)
            if not res.ok:
                return res
            rows.extend(res.data or [])
        return Result.Ok(rows)

    async def find_existing_artwork_ids(self, external_ids: list[str]) -> Result[set[str]]:
        res = await self._lookup_in(
            "SELECT external_id FROM artworks WHERE {IN_CLAUSE}",
            "external_id",
            list(dict.fromkeys(external_ids)),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Existence query failed")
        return Result.Ok({str(r["external_id"]) for r in res.data or []})

    async def find_artworks_by_external_ids(self, external_ids: list[str]) -> Result[dict[str, int]]:
        res = await self._lookup_in(
            "SELECT id, external_id FROM artworks WHERE {IN_CLAUSE}",
            "external_id",
            list(dict.fromkeys(external_ids)),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Artwork lookup failed")
        return Result.Ok({str(r["external_id"]): int(r["id"]) for r in res.data or []})

    async def find_artists_by_user_ids(self, user_ids: list[str]) -> Result[list[ArtistRow]]:
        res = await self._lookup_in(
            "SELECT id, name, username, user_id FROM artists WHERE {IN_CLAUSE}",
            "user_id",
            list(dict.fromkeys(user_ids)),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist lookup failed")
        return Result.Ok([_artist_from_row(r) for r in res.data or []])

    async def find_artist_by_name(self, name: str) -> Result[ArtistRow | None]:
        res = await self.db.aquery(
            "SELECT id, name, username, user_id FROM artists WHERE user_id IS NULL AND name = ? LIMIT 1",
            (name,),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist lookup failed")
        rows = res.data or []
        return Result.Ok(_artist_from_row(rows[0]) if rows else None)

    async def find_tags_by_names(self, names: list[str]) -> Result[dict[str, int]]:
        res = await self._lookup_in(
            "SELECT id, name FROM tags WHERE {IN_CLAUSE}",
            "name",
            list(dict.fromkeys(names)),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Tag lookup failed")
        return Result.Ok({str(r["name"]): int(r["id"]) for r in res.data or []})

    async def load_artists(self) -> Result[list[ArtistRow]]:
        res = await self.db.aquery("SELECT id, name, username, user_id FROM artists")
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist load failed")
        return Result.Ok([_artist_from_row(r) for r in res.data or []])

    async def load_tags(self) -> Result[dict[str, int]]:
        res = await self.db.aquery("SELECT id, name FROM tags")
        if not res.ok:
            return Result.Err(res.code, res.error or "Tag load failed")
        return Result.Ok({str(r["name"]): int(r["id"]) for r in res.data or []})

    async def counts(self) -> Result[dict[str, int]]:
        out: dict[str, int] = {}
        for table, _ in WIPE_ORDER:
            res = await self.db.aquery(f"SELECT COUNT(*) AS n FROM {table}")
            if not res.ok:
                return Result.Err(res.code, res.error or f"Count failed for {table}")
            out[table] = int((res.data or [{"n": 0}])[0]["n"] or 0)
        return Result.Ok(out)

    async def insert_many(self, kind: EntityKind, params_list: list[tuple]) -> Result[int]:
        """
        Insert rows of one kind in a single transaction, skipping duplicates.

        Returns the number of rows actually created. Any failure rolls the
        whole batch back and is returned as an error.
        """
        if not params_list:
            return Result.Ok(0)
        sql = INSERT_SQL[kind]
        created = 0
        try:
            async with self.db.atransaction(mode="immediate") as tx:
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Failed to begin transaction")
                res = await self.db.aexecutemany(sql, params_list)
                if not res.ok:
                    raise StoreWriteError(res)
                created = int(res.data or 0)
        except StoreWriteError as exc:
            return Result.Err(exc.result.code or ErrorCode.DB_ERROR, exc.result.error or "Batch insert failed")
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return Result.Ok(created)

    async def insert_one(self, kind: EntityKind, params: tuple) -> Result[bool]:
        """Insert one row; Ok(True) when created, Ok(False) when it already existed."""
        sql = INSERT_SQL[kind] + " RETURNING id"
        res = await self.db.aexecute(sql, params, fetch=True)
        if not res.ok:
            return Result.Err(res.code, res.error or "Insert failed", **res.meta)
        return Result.Ok(bool(res.data))

    async def delete_all(self) -> Result[dict[str, int]]:
        """Wipe every library table in referential order; returns removed counts."""
        removed: dict[str, int] = {}
        try:
            async with self.db.atransaction(mode="immediate") as tx:
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Failed to begin transaction")
                for table, label in WIPE_ORDER:
                    res = await self.db.aexecute(f"DELETE FROM {table}")
                    if not res.ok:
                        raise StoreWriteError(res)
                    removed[label] = int(res.data or 0)
        except StoreWriteError as exc:
            return Result.Err(exc.result.code or ErrorCode.DB_ERROR, exc.result.error or "Wipe failed")
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return Result.Ok(removed)

    async def cleanup_orphans(self) -> Result[dict[str, int]]:
        """
        Remove artworks without images, then artists without artworks and
        tags without artwork relations.
        """
        statements = (
            (
                "artwork_tags",
                "DELETE FROM artwork_tags WHERE artwork_id IN "
                "(SELECT a.id FROM artworks a WHERE NOT EXISTS (SELECT 1 FROM images i WHERE i.artwork_id = a.id))",
            ),
            (
                "artworks",
                "DELETE FROM artworks WHERE NOT EXISTS (SELECT 1 FROM images i WHERE i.artwork_id = artworks.id)",
            ),
            (
                "artists",
                "DELETE FROM artists WHERE NOT EXISTS (SELECT 1 FROM artworks a WHERE a.artist_id = artists.id)",
            ),
            (
                "tags",
                "DELETE FROM tags WHERE NOT EXISTS (SELECT 1 FROM artwork_tags t WHERE t.tag_id = tags.id)",
            ),
        )
        removed: dict[str, int] = {}
        try:
            async with self.db.atransaction(mode="immediate") as tx:
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Failed to begin transaction")
                for label, sql in statements:
                    res = await self.db.aexecute(sql)
                    if not res.ok:
                        raise StoreWriteError(res)
                    removed[label] = int(res.data or 0)
        except StoreWriteError as exc:
            return Result.Err(exc.result.code or ErrorCode.DB_ERROR, exc.result.error or "Cleanup failed")
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return Result.Ok(removed)

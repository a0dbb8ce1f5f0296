"""
BatchWriter: buffers staged rows and commits them in dependency order.

Each flush writes artists, artworks, tags, images and artwork_tags, one
phase at a time. A phase is first tried as a single insert-or-ignore batch;
when the store rejects it the phase is replayed row by row and every failing
row is recorded instead of aborting the flush. Parents are re-read by their
natural key (user id, external id, tag name) before children that reference
them are written.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ...config import DB_BATCH_TIMEOUT
from ...shared import ErrorCode, Result, elapsed_ms, get_logger, log_structured
from .entity_cache import EntityCache
from .models import (
    BatchResult,
    EntityKind,
    RowError,
    StagedArtist,
    StagedArtwork,
    StagedArtworkTag,
    StagedImage,
    StagedRow,
    StagedTag,
    row_payload,
)
from .store import LibraryStore

logger = get_logger(__name__)


class UnresolvedReference(ValueError):
    """A staged row points at a parent that has no store id."""


class _Buffers:
    def __init__(self) -> None:
        self.artist: dict[str, StagedArtist] = {}
        self.artwork: dict[str, StagedArtwork] = {}
        self.tag: dict[str, StagedTag] = {}
        self.image: dict[str, StagedImage] = {}
        self.artwork_tag: dict[str, StagedArtworkTag] = {}

    def for_kind(self, kind: EntityKind) -> dict[str, Any]:
        return getattr(self, kind)

    def __len__(self) -> int:
        return len(self.artist) + len(self.artwork) + len(self.tag) + len(self.image) + len(self.artwork_tag)

    def counts(self) -> dict[str, int]:
        return {
            "artist": len(self.artist),
            "artwork": len(self.artwork),
            "tag": len(self.tag),
            "image": len(self.image),
            "artwork_tag": len(self.artwork_tag),
        }


def _bool_param(value: bool | None) -> int | None:
    return None if value is None else int(bool(value))


class BatchWriter:
    """Staging buffers plus the flush that commits them."""

    def __init__(
        self,
        store: LibraryStore,
        cache: EntityCache,
        *,
        batch_timeout: float = DB_BATCH_TIMEOUT,
    ) -> None:
        self._store = store
        self._cache = cache
        self._batch_timeout = float(batch_timeout)
        self._buffers = _Buffers()

    @property
    def pending(self) -> int:
        return len(self._buffers)

    def pending_by_kind(self) -> dict[str, int]:
        return self._buffers.counts()

    def stage(self, row: StagedRow) -> bool:
        """
        Buffer one row. Returns False when a row with the same key is already
        staged; the first one is kept.
        """
        buffer = self._buffers.for_kind(row.kind)
        if row.key in buffer:
            return False
        buffer[row.key] = row
        return True

    def stage_artist(self, row: StagedArtist) -> bool:
        return self.stage(row)

    def stage_artwork(self, row: StagedArtwork) -> bool:
        return self.stage(row)

    def stage_tag(self, row: StagedTag) -> bool:
        return self.stage(row)

    def stage_image(self, row: StagedImage) -> bool:
        return self.stage(row)

    def stage_artwork_tag(self, row: StagedArtworkTag) -> bool:
        return self.stage(row)

    def stage_bundle(self, rows: list[StagedRow]) -> int:
        """Stage every row of one artwork without yielding; returns how many were new."""
        return sum(1 for row in rows if self.stage(row))

    async def flush(self) -> BatchResult:
        """
        Commit everything staged so far.

        Buffers are detached before the first write, so staging may continue
        while a flush is in progress and nothing is written twice.
        """
        buffers, self._buffers = self._buffers, _Buffers()
        result = BatchResult()
        if not len(buffers):
            return result
        start = time.perf_counter()

        await self._write_phase("artist", list(buffers.artist.values()), self._artist_params, result, single=self._insert_artist)
        artist_keys = list(dict.fromkeys(a.draft.artist_key for a in buffers.artwork.values()))
        preload = await self._cache.preload_artists(artist_keys)
        if not preload.ok:
            logger.warning("Artist id reload failed: %s", preload.error)

        artwork_keys = list(buffers.artwork)
        existing_before = await self._store.find_existing_artwork_ids(artwork_keys) if artwork_keys else Result.Ok(set())
        await self._write_phase("artwork", list(buffers.artwork.values()), self._artwork_params, result)

        await self._write_phase("tag", list(buffers.tag.values()), self._tag_params, result, single=self._insert_tag)
        tag_names = list(dict.fromkeys(t.tag_name for t in buffers.artwork_tag.values()))
        preload = await self._cache.preload_tags(tag_names)
        if not preload.ok:
            logger.warning("Tag id reload failed: %s", preload.error)

        referenced = list(
            dict.fromkeys(
                artwork_keys
                + [i.artwork_external_id for i in buffers.image.values()]
                + [t.artwork_external_id for t in buffers.artwork_tag.values()]
            )
        )
        ids = await self._store.find_artworks_by_external_ids(referenced)
        artwork_ids: dict[str, int] = (ids.data or {}) if ids.ok else {}
        if not ids.ok:
            logger.warning("Artwork id reload failed: %s", ids.error)
        if existing_before.ok:
            result.created_artwork_ids = [
                k for k in artwork_keys if k in artwork_ids and k not in (existing_before.data or set())
            ]

        await self._write_phase(
            "image",
            list(buffers.image.values()),
            lambda row: self._image_params(row, artwork_ids),
            result,
        )
        await self._write_phase(
            "artwork_tag",
            list(buffers.artwork_tag.values()),
            lambda row: self._artwork_tag_params(row, artwork_ids),
            result,
        )

        result.elapsed_ms = elapsed_ms(start)
        log_structured(
            logger,
            logging.WARNING if result.errors else logging.DEBUG,
            "batch_flushed",
            created=result.created,
            duplicates=result.duplicates_skipped,
            errors=len(result.errors),
            fallbacks=result.fallbacks,
            elapsed_ms=round(result.elapsed_ms, 1),
        )
        return result

    async def _insert_many(self, kind: EntityKind, params: list[tuple]) -> Result[int]:
        try:
            return await asyncio.wait_for(self._store.insert_many(kind, params), timeout=self._batch_timeout)
        except asyncio.TimeoutError:
            return Result.Err(ErrorCode.TIMEOUT, f"Batch insert of {len(params)} {kind} rows timed out")

    async def _write_phase(
        self,
        kind: EntityKind,
        rows: list[Any],
        params_for: Callable[[Any], tuple],
        result: BatchResult,
        *,
        single: Callable[[Any, tuple], Awaitable[Result[bool]]] | None = None,
    ) -> None:
        ready: list[tuple[Any, tuple]] = []
        for row in rows:
            try:
                ready.append((row, params_for(row)))
            except UnresolvedReference as exc:
                result.errors.append(RowError(kind=kind, payload=row_payload(row), message=str(exc)))
        if not ready:
            return

        batch = await self._insert_many(kind, [params for _, params in ready])
        if batch.ok:
            created = int(batch.data or 0)
            result.created[kind] += created
            result.duplicates_skipped[kind] += len(ready) - created
            return

        logger.warning(
            "Batch insert of %d %s rows failed (%s); retrying row by row",
            len(ready),
            kind,
            batch.error,
        )
        result.fallbacks.append(kind)
        insert_single = single or (lambda _row, params: self._store.insert_one(kind, params))
        for row, params in ready:
            res = await insert_single(row, params)
            if not res.ok:
                result.errors.append(
                    RowError(kind=kind, payload=row_payload(row), message=res.error or "Insert failed")
                )
                continue
            if res.data:
                result.created[kind] += 1
            else:
                result.duplicates_skipped[kind] += 1

    async def _insert_artist(self, row: StagedArtist, _params: tuple) -> Result[bool]:
        res = await self._cache.ensure_artist(row)
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist insert failed")
        return Result.Ok(bool(res.meta.get("created")))

    async def _insert_tag(self, row: StagedTag, _params: tuple) -> Result[bool]:
        res = await self._cache.resolve_tag(row.name)
        if not res.ok:
            return Result.Err(res.code, res.error or "Tag insert failed")
        return Result.Ok(bool(res.meta.get("created")))

    @staticmethod
    def _artist_params(row: StagedArtist) -> tuple:
        return (row.name, row.username, row.user_id, row.bio)

    def _artwork_params(self, row: StagedArtwork) -> tuple:
        draft = row.draft
        artist_id = self._cache.artist_id_for(draft.artist_key)
        if artist_id is None:
            raise UnresolvedReference(f"Artist {draft.artist_key} has no id")
        return (
            draft.external_id,
            draft.title,
            draft.description,
            artist_id,
            draft.image_count,
            draft.description_length,
            draft.source_url,
            draft.original_url,
            draft.thumbnail_url,
            draft.x_restrict,
            _bool_param(draft.is_ai_generated),
            draft.size,
            draft.bookmark_count,
            draft.source_date.isoformat() if draft.source_date else None,
            draft.directory_created_at.isoformat() if draft.directory_created_at else None,
        )

    @staticmethod
    def _tag_params(row: StagedTag) -> tuple:
        return (row.name,)

    @staticmethod
    def _image_params(row: StagedImage, artwork_ids: dict[str, int]) -> tuple:
        artwork_id = artwork_ids.get(row.artwork_external_id)
        if artwork_id is None:
            raise UnresolvedReference(f"Artwork {row.artwork_external_id} has no id")
        return (row.path, row.size, row.width, row.height, row.sort_order, artwork_id)

    def _artwork_tag_params(self, row: StagedArtworkTag, artwork_ids: dict[str, int]) -> tuple:
        artwork_id = artwork_ids.get(row.artwork_external_id)
        if artwork_id is None:
            raise UnresolvedReference(f"Artwork {row.artwork_external_id} has no id")
        tag_id = self._cache.tag_id_for(row.tag_name)
        if tag_id is None:
            raise UnresolvedReference(f"Tag {row.tag_name!r} has no id")
        return (artwork_id, tag_id)

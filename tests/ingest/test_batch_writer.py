import asyncio

import pytest

from pixishelf_backend.features.ingest.batch_writer import BatchWriter
from pixishelf_backend.features.ingest.entity_cache import EntityCache
from pixishelf_backend.features.ingest.models import (
    ArtworkDraft,
    StagedArtist,
    StagedArtwork,
    StagedArtworkTag,
    StagedImage,
    StagedTag,
)
from pixishelf_backend.shared import Result


def _stage_artwork(writer: BatchWriter, external_id: str, *, user_id: str = "1", tags=("a", "b"), pages: int = 2) -> None:
    writer.stage_artist(StagedArtist(name="Alice", username="Alice", user_id=user_id))
    draft = ArtworkDraft(external_id=external_id, title="T", artist_key=user_id, image_count=pages)
    writer.stage_artwork(StagedArtwork(draft=draft))
    for page in range(pages):
        writer.stage_image(
            StagedImage(
                artwork_external_id=external_id,
                path=f"Alice/{external_id}/{external_id}_p{page}.jpg",
                size=10,
                sort_order=page,
            )
        )
    for tag in tags:
        writer.stage_tag(StagedTag(name=tag))
        writer.stage_artwork_tag(StagedArtworkTag(artwork_external_id=external_id, tag_name=tag))


@pytest.mark.asyncio
async def test_flush_writes_in_dependency_order(store) -> None:
    writer = BatchWriter(store, EntityCache(store))
    _stage_artwork(writer, "123")
    assert writer.pending_by_kind() == {"artist": 1, "artwork": 1, "tag": 2, "image": 2, "artwork_tag": 2}

    result = await writer.flush()
    assert result.errors == []
    assert result.created == {"artist": 1, "artwork": 1, "tag": 2, "image": 2, "artwork_tag": 2}
    assert result.created_artwork_ids == ["123"]
    assert result.fallbacks == []
    assert writer.pending == 0

    counts = await store.counts()
    assert counts.data == {"artwork_tags": 2, "images": 2, "artworks": 1, "artists": 1, "tags": 2}


@pytest.mark.asyncio
async def test_second_flush_reports_duplicates(store) -> None:
    cache = EntityCache(store)
    writer = BatchWriter(store, cache)
    _stage_artwork(writer, "123")
    await writer.flush()

    _stage_artwork(writer, "123")
    again = await writer.flush()
    assert again.artworks_created == 0
    assert again.duplicates_skipped["artwork"] == 1
    assert again.duplicates_skipped["image"] == 2
    assert again.created_artwork_ids == []


@pytest.mark.asyncio
async def test_stage_keeps_first_row_per_key(store) -> None:
    writer = BatchWriter(store, EntityCache(store))
    assert writer.stage_tag(StagedTag(name="a")) is True
    assert writer.stage_tag(StagedTag(name="a")) is False
    assert writer.pending == 1


@pytest.mark.asyncio
async def test_stage_bundle_counts_new_rows(store) -> None:
    writer = BatchWriter(store, EntityCache(store))
    rows = [
        StagedArtist(name="Alice", username="Alice", user_id="1"),
        StagedArtwork(draft=ArtworkDraft(external_id="9", title="T", artist_key="1", image_count=1)),
        StagedImage(artwork_external_id="9", path="Alice/9/9_p0.jpg", size=1, sort_order=0),
        StagedTag(name="a"),
        StagedArtworkTag(artwork_external_id="9", tag_name="a"),
    ]
    assert writer.stage_bundle(rows) == 5
    assert writer.stage_bundle([StagedTag(name="a"), StagedTag(name="b")]) == 1
    assert writer.pending_by_kind() == {"artist": 1, "artwork": 1, "tag": 2, "image": 1, "artwork_tag": 1}


def test_staged_rows_validate_on_construction() -> None:
    with pytest.raises(ValueError):
        StagedTag(name=" ")
    with pytest.raises(ValueError):
        StagedArtwork(draft=ArtworkDraft(external_id="1", title="T", artist_key="1", image_count=0))
    with pytest.raises(ValueError):
        StagedImage(artwork_external_id="1", path="p", size=1, sort_order=-1)


@pytest.mark.asyncio
async def test_rejected_batch_falls_back_to_single_rows(store, monkeypatch) -> None:
    real_insert_many = store.insert_many

    async def _insert_many(kind, params_list):
        if kind == "image":
            return Result.Err("DB_ERROR", "batch rejected")
        return await real_insert_many(kind, params_list)

    monkeypatch.setattr(store, "insert_many", _insert_many)

    writer = BatchWriter(store, EntityCache(store))
    _stage_artwork(writer, "5", pages=3)
    result = await writer.flush()

    assert result.fallbacks == ["image"]
    assert result.images_created == 3
    assert result.errors == []


@pytest.mark.asyncio
async def test_fallback_records_row_errors_without_aborting(store, monkeypatch) -> None:
    real_insert_one = store.insert_one

    async def _insert_many(kind, params_list):
        return Result.Err("DB_ERROR", "batch rejected")

    async def _insert_one(kind, params):
        if kind == "image" and params[0].endswith("_p1.jpg"):
            return Result.Err("DB_ERROR", "disk full")
        return await real_insert_one(kind, params)

    monkeypatch.setattr(store, "insert_many", _insert_many)
    monkeypatch.setattr(store, "insert_one", _insert_one)

    writer = BatchWriter(store, EntityCache(store))
    _stage_artwork(writer, "6", pages=3)
    result = await writer.flush()

    assert set(result.fallbacks) == {"artist", "artwork", "tag", "image", "artwork_tag"}
    assert result.artworks_created == 1
    assert result.images_created == 2
    assert len(result.errors) == 1
    err = result.errors[0]
    assert err.kind == "image"
    assert err.payload["path"].endswith("_p1.jpg")
    assert err.message == "disk full"
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_timed_out_batch_falls_back(store, monkeypatch) -> None:
    real_insert_many = store.insert_many

    async def _slow_insert_many(kind, params_list):
        if kind == "tag":
            await asyncio.sleep(5)
        return await real_insert_many(kind, params_list)

    monkeypatch.setattr(store, "insert_many", _slow_insert_many)

    writer = BatchWriter(store, EntityCache(store), batch_timeout=0.5)
    _stage_artwork(writer, "7", pages=1)
    result = await writer.flush()

    assert result.fallbacks == ["tag"]
    assert result.tags_created == 2
    assert result.artwork_tags_created == 2


@pytest.mark.asyncio
async def test_children_of_unknown_parents_are_row_errors(store) -> None:
    writer = BatchWriter(store, EntityCache(store))
    writer.stage_image(StagedImage(artwork_external_id="404", path="x/404_p0.jpg", size=1, sort_order=0))
    draft = ArtworkDraft(external_id="9", title="T", artist_key="no-such-artist", image_count=1)
    writer.stage_artwork(StagedArtwork(draft=draft))

    result = await writer.flush()
    kinds = sorted(e.kind for e in result.errors)
    assert kinds == ["artwork", "image"]
    assert result.artworks_created == 0
    assert result.images_created == 0
    assert (await store.counts()).data["images"] == 0


@pytest.mark.asyncio
async def test_flush_with_nothing_staged_is_empty(store) -> None:
    result = await BatchWriter(store, EntityCache(store)).flush()
    assert result.is_empty

import pytest

from pixishelf_backend.features.ingest.store import LibraryStore


async def _seed_artwork(store, external_id="1", user_id="10", tag="t", path=None):
    await store.insert_many("artist", [("Name", "Name", user_id, None)])
    artists = await store.find_artists_by_user_ids([user_id])
    artist_id = artists.data[0].id
    await store.insert_many(
        "artwork",
        [(external_id, "Title", "", artist_id, 1, 0, None, None, None, None, None, None, None, None, None)],
    )
    ids = await store.find_artworks_by_external_ids([external_id])
    artwork_id = ids.data[external_id]
    if path is not None:
        await store.insert_many("image", [(path, 3, None, None, 0, artwork_id)])
    if tag is not None:
        await store.insert_many("tag", [(tag,)])
        tags = await store.find_tags_by_names([tag])
        await store.insert_many("artwork_tag", [(artwork_id, tags.data[tag])])
    return artwork_id


@pytest.mark.asyncio
async def test_insert_many_counts_only_created_rows(store) -> None:
    res = await store.insert_many("tag", [("a",), ("b",), ("a",)])
    assert res.ok
    assert res.data == 2

    again = await store.insert_many("tag", [("a",), ("c",)])
    assert again.data == 1

    tags = await store.load_tags()
    assert set(tags.data) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_insert_many_rolls_back_whole_batch(store) -> None:
    # artist_id 999 violates the foreign key, which OR IGNORE does not cover.
    rows = [
        ("1", "ok", "", None, 1, 0, None, None, None, None, None, None, None, None, None),
        ("2", "bad", "", 999, 1, 0, None, None, None, None, None, None, None, None, None),
    ]
    res = await store.insert_many("artwork", rows)
    assert not res.ok
    existing = await store.find_existing_artwork_ids(["1", "2"])
    assert existing.data == set()


@pytest.mark.asyncio
async def test_insert_one_reports_created_flag(store) -> None:
    first = await store.insert_one("tag", ("solo",))
    assert first.ok and first.data is True
    second = await store.insert_one("tag", ("solo",))
    assert second.ok and second.data is False


@pytest.mark.asyncio
async def test_lookups_are_chunked(db) -> None:
    store = LibraryStore(db, lookup_batch=2)
    await store.insert_many("tag", [(f"t{i}",) for i in range(5)])
    found = await store.find_tags_by_names([f"t{i}" for i in range(5)] + ["missing"])
    assert found.ok
    assert sorted(found.data) == [f"t{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_find_artist_by_name_only_matches_unidentified(store) -> None:
    await store.insert_many("artist", [("Same", "Same", "1", None), ("Same", None, None, None)])
    res = await store.find_artist_by_name("Same")
    assert res.ok
    assert res.data is not None
    assert res.data.user_id is None
    assert (await store.find_artist_by_name("Nobody")).data is None


@pytest.mark.asyncio
async def test_counts_and_delete_all(store) -> None:
    await _seed_artwork(store, path="x/1_p0.jpg")
    counts = await store.counts()
    assert counts.data == {"artwork_tags": 1, "images": 1, "artworks": 1, "artists": 1, "tags": 1}

    removed = await store.delete_all()
    assert removed.ok
    assert removed.data == {"artwork_tags": 1, "images": 1, "artworks": 1, "artists": 1, "tags": 1}
    after = await store.counts()
    assert set(after.data.values()) == {0}


@pytest.mark.asyncio
async def test_cleanup_orphans_removes_imageless_artworks(store) -> None:
    await _seed_artwork(store, external_id="1", user_id="10", tag="keep", path="a/1_p0.jpg")
    await _seed_artwork(store, external_id="2", user_id="20", tag="drop", path=None)

    res = await store.cleanup_orphans()
    assert res.ok
    assert res.data == {"artwork_tags": 1, "artworks": 1, "artists": 1, "tags": 1}
    assert (await store.find_existing_artwork_ids(["1", "2"])).data == {"1"}
    assert set((await store.load_tags()).data) == {"keep"}

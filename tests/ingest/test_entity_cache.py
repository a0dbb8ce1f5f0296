import pytest

from pixishelf_backend.features.ingest.entity_cache import EntityCache, decompose_artist_name
from pixishelf_backend.features.ingest.models import ArtistName, StagedArtist


def test_decompose_artist_name_variants() -> None:
    assert decompose_artist_name("Alice (12)") == ArtistName("Alice", "Alice", "12")
    assert decompose_artist_name("bob-abc1") == ArtistName("bob", "bob", "abc1")
    assert decompose_artist_name("  Plain Name  ") == ArtistName("Plain Name")
    assert decompose_artist_name("") == ArtistName("")


@pytest.mark.asyncio
async def test_artist_identity_prefers_explicit_id(store) -> None:
    cache = EntityCache(store)
    identity = cache.artist_identity("77", "Alice (12)")
    assert identity.user_id == "77"
    assert identity.display_name == "Alice"

    plain = cache.artist_identity("5", "Carol")
    assert plain.user_id == "5"
    assert plain.username == "Carol"

    cache.decompose("Carol")
    assert cache.stats.hits >= 1


@pytest.mark.asyncio
async def test_ensure_artist_creates_once(store) -> None:
    cache = EntityCache(store)
    staged = StagedArtist(name="Alice", username="Alice", user_id="1")

    first = await cache.ensure_artist(staged)
    assert first.ok, first.error
    assert first.meta["created"] is True

    second = await cache.ensure_artist(staged)
    assert second.ok
    assert second.meta["created"] is False
    assert second.data.id == first.data.id
    assert cache.artist_id_for("1") == first.data.id


@pytest.mark.asyncio
async def test_ensure_artist_rereads_row_created_elsewhere(store) -> None:
    other = EntityCache(store)
    created = await other.ensure_artist(StagedArtist(name="Dan", username="Dan", user_id="4"))
    assert created.ok

    cache = EntityCache(store)
    res = await cache.ensure_artist(StagedArtist(name="Dan", username="Dan", user_id="4"))
    assert res.ok
    assert res.meta["created"] is False
    assert res.data.id == created.data.id


@pytest.mark.asyncio
async def test_resolve_artist_without_id_uses_name(store) -> None:
    cache = EntityCache(store)
    first = await cache.resolve_artist(None, "Nameless")
    assert first.ok, first.error
    assert first.data.user_id is None
    assert first.meta["created"] is True

    again = await EntityCache(store).resolve_artist("", "Nameless")
    assert again.ok
    assert again.data.id == first.data.id
    assert again.meta["created"] is False


@pytest.mark.asyncio
async def test_resolve_artist_requires_some_identity(store) -> None:
    res = await EntityCache(store).resolve_artist(None, "   ")
    assert not res.ok
    assert res.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_resolve_tag_is_cached(store) -> None:
    cache = EntityCache(store)
    first = await cache.resolve_tag("cat")
    assert first.ok
    assert first.meta["created"] is True
    queries = cache.stats.queries

    second = await cache.resolve_tag("cat")
    assert second.data == first.data
    assert second.meta["created"] is False
    assert cache.stats.queries == queries
    assert cache.has_tag("cat")


@pytest.mark.asyncio
async def test_resolve_tag_rejects_blank(store) -> None:
    res = await EntityCache(store).resolve_tag("  ")
    assert not res.ok


@pytest.mark.asyncio
async def test_warm_and_preload(store) -> None:
    seed = EntityCache(store)
    await seed.ensure_artist(StagedArtist(name="A", username="A", user_id="1"))
    await seed.ensure_artist(StagedArtist(name="B", username="B", user_id="2"))
    await seed.resolve_tag("x")

    warmed = EntityCache(store)
    res = await warmed.warm(max_rows=100)
    assert res.ok
    assert res.data == {"artists": 2, "tags": 1}
    assert warmed.has_artist("1") and warmed.has_artist("2")
    assert warmed.tag_id_for("x") is not None

    cold = EntityCache(store)
    skipped = await cold.warm(max_rows=0)
    assert skipped.data == {"artists": 0, "tags": 0}
    loaded = await cold.preload_artists(["2", "2", "missing"])
    assert loaded.data == 1
    assert cold.has_artist("2")
    assert not cold.has_artist("1")
    assert (await cold.preload_artists(["2"])).data == 0

    tags = await cold.preload_tags(["x", "y"])
    assert tags.data == 1
    assert len(cold) == 2

    cold.clear()
    assert len(cold) == 0

"""
Scan-scoped entity cache.

Maps artist user ids and tag names to store ids so that per-artwork work is a
pure in-memory lookup once a chunk has been preloaded. One instance lives for
exactly one scan; nothing here is process-global.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from ...shared import ErrorCode, Result, get_logger
from .models import ArtistName, ArtistRow, StagedArtist
from .store import LibraryStore

logger = get_logger(__name__)

_NAME_WITH_ID_RE = re.compile(r"^(.+?)\s*\((\d+)\)$")
_NAME_WITH_DASH_RE = re.compile(r"^(.+?)-(\d+|[a-zA-Z0-9]+)$")


def decompose_artist_name(raw: str) -> ArtistName:
    """
    Split a raw author label into display name, username and user id.

    `"name (123)"` and `"name-abc1"` carry a structured id; anything else is a
    plain display name.
    """
    label = (raw or "").strip()
    for pattern in (_NAME_WITH_ID_RE, _NAME_WITH_DASH_RE):
        match = pattern.match(label)
        if not match:
            continue
        username = match.group(1).strip()
        user_id = match.group(2).strip()
        if username and user_id:
            return ArtistName(display_name=username, username=username, user_id=user_id)
    return ArtistName(display_name=label)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    queries: int = 0
    inserts: int = 0
    conflicts: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total, 4) if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "queries": self.queries,
            "inserts": self.inserts,
            "conflicts": self.conflicts,
        }


class EntityCache:
    """In-memory `user_id -> ArtistRow` and `tag name -> id` maps for one scan."""

    def __init__(self, store: LibraryStore):
        self._store = store
        self._artists: dict[str, ArtistRow] = {}
        self._artists_by_name: dict[str, ArtistRow] = {}
        self._tags: dict[str, int] = {}
        self._names: dict[str, ArtistName] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._artists) + len(self._artists_by_name) + len(self._tags)

    def clear(self) -> None:
        self._artists.clear()
        self._artists_by_name.clear()
        self._tags.clear()
        self._names.clear()
        self.stats = CacheStats()

    def decompose(self, raw: str) -> ArtistName:
        """Memoized `decompose_artist_name`."""
        cached = self._names.get(raw)
        if cached is not None:
            self.stats.hits += 1
            return cached
        self.stats.misses += 1
        parsed = decompose_artist_name(raw)
        self._names[raw] = parsed
        return parsed

    def artist_identity(self, external_id: str | None, display_name: str) -> ArtistName:
        """
        Identity used to stage or resolve an artist.

        An explicit external id wins over one embedded in the label; the label
        still supplies the display name and username.
        """
        parsed = self.decompose(display_name)
        user_id = (external_id or "").strip() or parsed.user_id
        username = parsed.username or parsed.display_name or None
        return ArtistName(display_name=parsed.display_name, username=username, user_id=user_id)

    def staged_artist(self, external_id: str, display_name: str, *, bio: str | None = None) -> StagedArtist:
        identity = self.artist_identity(external_id, display_name)
        return StagedArtist(
            name=identity.display_name or identity.user_id or "",
            username=identity.username,
            user_id=identity.user_id or "",
            bio=bio,
        )

    def has_artist(self, user_id: str) -> bool:
        return user_id in self._artists

    def has_tag(self, name: str) -> bool:
        return name in self._tags

    def artist_id_for(self, user_id: str) -> int | None:
        row = self._artists.get(user_id)
        if row is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return row.id

    def tag_id_for(self, name: str) -> int | None:
        tag_id = self._tags.get(name)
        if tag_id is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        return tag_id

    def register_artist(self, row: ArtistRow) -> None:
        if row.user_id:
            self._artists[str(row.user_id)] = row
        else:
            self._artists_by_name[row.name] = row

    def register_tag(self, name: str, tag_id: int) -> None:
        self._tags[name] = int(tag_id)

    async def preload_artists(self, user_ids: list[str]) -> Result[int]:
        """Load the artists among `user_ids` that are not cached yet."""
        missing = [u for u in dict.fromkeys(user_ids) if u and u not in self._artists]
        if not missing:
            return Result.Ok(0)
        self.stats.queries += 1
        res = await self._store.find_artists_by_user_ids(missing)
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist preload failed")
        for row in res.data or []:
            self.register_artist(row)
        return Result.Ok(len(res.data or []))

    async def preload_tags(self, names: list[str]) -> Result[int]:
        """Load the tags among `names` that are not cached yet."""
        missing = [n for n in dict.fromkeys(names) if n and n not in self._tags]
        if not missing:
            return Result.Ok(0)
        self.stats.queries += 1
        res = await self._store.find_tags_by_names(missing)
        if not res.ok:
            return Result.Err(res.code, res.error or "Tag preload failed")
        for name, tag_id in (res.data or {}).items():
            self.register_tag(name, tag_id)
        return Result.Ok(len(res.data or {}))

    async def warm(self, max_rows: int) -> Result[dict[str, int]]:
        """
        Load every artist and tag when the tables are small enough.

        Larger libraries fall back to per-chunk `preload_*` calls.
        """
        if max_rows <= 0:
            return Result.Ok({"artists": 0, "tags": 0})
        counts = await self._store.counts()
        if not counts.ok:
            return Result.Err(counts.code, counts.error or "Count failed")
        sizes = counts.data or {}
        loaded = {"artists": 0, "tags": 0}
        if int(sizes.get("artists", 0)) <= max_rows:
            self.stats.queries += 1
            artists = await self._store.load_artists()
            if not artists.ok:
                return Result.Err(artists.code, artists.error or "Artist load failed")
            for row in artists.data or []:
                self.register_artist(row)
            loaded["artists"] = len(artists.data or [])
        if int(sizes.get("tags", 0)) <= max_rows:
            self.stats.queries += 1
            tags = await self._store.load_tags()
            if not tags.ok:
                return Result.Err(tags.code, tags.error or "Tag load failed")
            for name, tag_id in (tags.data or {}).items():
                self.register_tag(name, tag_id)
            loaded["tags"] = len(tags.data or {})
        return Result.Ok(loaded)

    async def ensure_artist(self, staged: StagedArtist) -> Result[ArtistRow]:
        """
        Cached artist row for `staged`, inserting it when it does not exist.

        A row another writer created first is re-read instead of reported.
        The Ok result carries `created=True` when this call inserted the row.
        """
        cached = self._artists.get(staged.user_id)
        if cached is not None:
            self.stats.hits += 1
            return Result.Ok(cached, created=False)
        self.stats.misses += 1

        found = await self._reread_artist(staged.user_id)
        if not found.ok:
            return found
        if found.data is not None:
            return Result.Ok(found.data, created=False)

        self.stats.inserts += 1
        ins = await self._store.insert_one("artist", (staged.name, staged.username, staged.user_id, staged.bio))
        if not ins.ok and not ins.meta.get("integrity"):
            return Result.Err(ins.code, ins.error or "Artist insert failed")
        created = bool(ins.ok and ins.data)
        if not created:
            self.stats.conflicts += 1

        found = await self._reread_artist(staged.user_id)
        if not found.ok:
            return found
        if found.data is None:
            return Result.Err(ErrorCode.DB_ERROR, f"Artist {staged.user_id} missing after insert")
        return Result.Ok(found.data, created=created)

    async def _reread_artist(self, user_id: str) -> Result[ArtistRow | None]:
        self.stats.queries += 1
        res = await self._store.find_artists_by_user_ids([user_id])
        if not res.ok:
            return Result.Err(res.code, res.error or "Artist lookup failed")
        rows = res.data or []
        if not rows:
            return Result.Ok(None)
        self.register_artist(rows[0])
        return Result.Ok(rows[0])

    async def resolve_artist(self, external_id: str | None, display_name: str) -> Result[ArtistRow]:
        """
        Artist row for an author, creating it on first sight.

        Without any structured id the display name is the identity.
        """
        identity = self.artist_identity(external_id, display_name)
        if identity.user_id:
            return await self.ensure_artist(
                StagedArtist(
                    name=identity.display_name or identity.user_id,
                    username=identity.username,
                    user_id=identity.user_id,
                )
            )

        name = identity.display_name
        if not name:
            return Result.Err(ErrorCode.INVALID_INPUT, "Artist name is required")
        cached = self._artists_by_name.get(name)
        if cached is not None:
            self.stats.hits += 1
            return Result.Ok(cached, created=False)
        self.stats.misses += 1
        self.stats.queries += 1
        found = await self._store.find_artist_by_name(name)
        if not found.ok:
            return Result.Err(found.code, found.error or "Artist lookup failed")
        if found.data is not None:
            self.register_artist(found.data)
            return Result.Ok(found.data, created=False)
        self.stats.inserts += 1
        ins = await self._store.insert_one("artist", (name, None, None, None))
        if not ins.ok and not ins.meta.get("integrity"):
            return Result.Err(ins.code, ins.error or "Artist insert failed")
        found = await self._store.find_artist_by_name(name)
        if not found.ok or found.data is None:
            return Result.Err(ErrorCode.DB_ERROR, found.error or f"Artist {name!r} missing after insert")
        self.register_artist(found.data)
        return Result.Ok(found.data, created=bool(ins.ok and ins.data))

    async def resolve_tag(self, name: str) -> Result[int]:
        """Tag id for `name`, creating the tag on first sight. Ok carries `created`."""
        name = (name or "").strip()
        if not name:
            return Result.Err(ErrorCode.INVALID_INPUT, "Tag name is required")
        cached = self._tags.get(name)
        if cached is not None:
            self.stats.hits += 1
            return Result.Ok(cached, created=False)
        self.stats.misses += 1

        found = await self._reread_tag(name)
        if not found.ok:
            return found
        if found.data is not None:
            return Result.Ok(found.data, created=False)

        self.stats.inserts += 1
        ins = await self._store.insert_one("tag", (name,))
        if not ins.ok and not ins.meta.get("integrity"):
            return Result.Err(ins.code, ins.error or "Tag insert failed")
        created = bool(ins.ok and ins.data)
        if not created:
            self.stats.conflicts += 1

        found = await self._reread_tag(name)
        if not found.ok:
            return found
        if found.data is None:
            return Result.Err(ErrorCode.DB_ERROR, f"Tag {name!r} missing after insert")
        return Result.Ok(found.data, created=created)

    async def _reread_tag(self, name: str) -> Result[int | None]:
        self.stats.queries += 1
        res = await self._store.find_tags_by_names([name])
        if not res.ok:
            return Result.Err(res.code, res.error or "Tag lookup failed")
        tag_id = (res.data or {}).get(name)
        if tag_id is not None:
            self.register_tag(name, tag_id)
        return Result.Ok(tag_id)

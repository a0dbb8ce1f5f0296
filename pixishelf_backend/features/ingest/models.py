"""
Data types flowing through the ingestion pipeline.

Staged rows are a tagged union (`StagedRow`): one frozen dataclass per entity
kind, validated on construction. Rows reference their parents by external key
(artist user id, artwork external id, tag name); surrogate ids are resolved at
flush time after the parent rows exist.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

EntityKind = Literal["artist", "artwork", "tag", "image", "artwork_tag"]
ENTITY_KINDS: tuple[EntityKind, ...] = ("artist", "artwork", "tag", "image", "artwork_tag")


class ScanState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    RESOLVING = "resolving"
    PROCESSING = "processing"
    CLEANUP = "cleanup"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanState.COMPLETE, ScanState.CANCELLED, ScanState.FAILED)


class ScanErrorKind(str, Enum):
    PARSE_ERROR = "parse_error"
    ASSOCIATION_ERROR = "association_error"
    DUPLICATE_ID = "duplicate_id"
    BATCH_WRITE_ERROR = "batch_write_error"
    DISCOVERY_FAILURE = "discovery_failure"


@dataclass(frozen=True)
class MetadataRecord:
    external_id: str
    title: str
    author_name: str
    author_id: str
    description: str = ""
    tags: tuple[str, ...] = ()
    source_url: str | None = None
    original_url: str | None = None
    thumbnail_url: str | None = None
    x_restrict: str | None = None
    is_ai_generated: bool | None = None
    size: str | None = None
    bookmark_count: int | None = None
    source_date: datetime | None = None


@dataclass(frozen=True)
class MediaFile:
    path: str
    size: int
    page_index: int
    width: int | None = None
    height: int | None = None

    @property
    def sort_order(self) -> int:
        return self.page_index


@dataclass(frozen=True)
class DiscoveredArtwork:
    """A metadata file found during discovery."""

    external_id: str
    metadata_path: str
    directory: str


@dataclass(frozen=True)
class ArtistRow:
    id: int
    name: str
    username: str | None
    user_id: str | None


@dataclass(frozen=True)
class ArtistName:
    """Result of decomposing a raw author label."""

    display_name: str
    username: str | None = None
    user_id: str | None = None


def _require(value: Any, message: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(message)


@dataclass(frozen=True)
class StagedArtist:
    name: str
    username: str | None
    user_id: str
    bio: str | None = None
    kind: Literal["artist"] = field(default="artist", init=False)

    def __post_init__(self) -> None:
        _require(self.name, "artist name is required")
        _require(self.user_id, "artist user_id is required")

    @property
    def key(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class ArtworkDraft:
    """Write-ready projection of a metadata record and its media count."""

    external_id: str
    title: str
    artist_key: str
    image_count: int
    description: str = ""
    source_url: str | None = None
    original_url: str | None = None
    thumbnail_url: str | None = None
    x_restrict: str | None = None
    is_ai_generated: bool | None = None
    size: str | None = None
    bookmark_count: int | None = None
    source_date: datetime | None = None
    directory_created_at: datetime | None = None

    @property
    def description_length(self) -> int:
        return len(self.description or "")

    @classmethod
    def from_record(
        cls,
        record: MetadataRecord,
        *,
        artist_key: str,
        image_count: int,
        directory_created_at: datetime | None = None,
    ) -> "ArtworkDraft":
        return cls(
            external_id=record.external_id,
            title=record.title,
            artist_key=artist_key,
            image_count=image_count,
            description=record.description,
            source_url=record.source_url,
            original_url=record.original_url,
            thumbnail_url=record.thumbnail_url,
            x_restrict=record.x_restrict,
            is_ai_generated=record.is_ai_generated,
            size=record.size,
            bookmark_count=record.bookmark_count,
            source_date=record.source_date,
            directory_created_at=directory_created_at,
        )


@dataclass(frozen=True)
class StagedArtwork:
    draft: ArtworkDraft
    kind: Literal["artwork"] = field(default="artwork", init=False)

    def __post_init__(self) -> None:
        _require(self.draft.external_id, "artwork external_id is required")
        _require(self.draft.title, "artwork title is required")
        _require(self.draft.artist_key, "artwork artist_key is required")
        if self.draft.image_count < 1:
            raise ValueError("artwork must have at least one image")

    @property
    def key(self) -> str:
        return self.draft.external_id


@dataclass(frozen=True)
class StagedTag:
    name: str
    kind: Literal["tag"] = field(default="tag", init=False)

    def __post_init__(self) -> None:
        _require(self.name, "tag name is required")

    @property
    def key(self) -> str:
        return self.name


@dataclass(frozen=True)
class StagedImage:
    artwork_external_id: str
    path: str
    size: int
    sort_order: int
    width: int | None = None
    height: int | None = None
    kind: Literal["image"] = field(default="image", init=False)

    def __post_init__(self) -> None:
        _require(self.artwork_external_id, "image artwork_external_id is required")
        _require(self.path, "image path is required")
        if self.sort_order < 0:
            raise ValueError("image sort_order must be >= 0")

    @property
    def key(self) -> str:
        return self.path


@dataclass(frozen=True)
class StagedArtworkTag:
    artwork_external_id: str
    tag_name: str
    kind: Literal["artwork_tag"] = field(default="artwork_tag", init=False)

    def __post_init__(self) -> None:
        _require(self.artwork_external_id, "artwork_tag artwork_external_id is required")
        _require(self.tag_name, "artwork_tag tag_name is required")

    @property
    def key(self) -> str:
        return f"{self.artwork_external_id}:{self.tag_name}"


StagedRow = Union[StagedArtist, StagedArtwork, StagedTag, StagedImage, StagedArtworkTag]


def row_payload(row: StagedRow) -> dict[str, Any]:
    """JSON-friendly payload of a staged row for error reports."""
    data = asdict(row)
    if isinstance(row, StagedArtwork):
        data = {"kind": row.kind, **data["draft"]}
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


@dataclass
class RowError:
    kind: EntityKind
    payload: dict[str, Any]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "payload": self.payload, "message": self.message}


def _kind_counts() -> dict[str, int]:
    return {kind: 0 for kind in ENTITY_KINDS}


@dataclass
class BatchResult:
    created: dict[str, int] = field(default_factory=_kind_counts)
    updated: dict[str, int] = field(default_factory=_kind_counts)
    duplicates_skipped: dict[str, int] = field(default_factory=_kind_counts)
    errors: list[RowError] = field(default_factory=list)
    fallbacks: list[str] = field(default_factory=list)
    created_artwork_ids: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def artists_created(self) -> int:
        return self.created["artist"]

    @property
    def artworks_created(self) -> int:
        return self.created["artwork"]

    @property
    def tags_created(self) -> int:
        return self.created["tag"]

    @property
    def images_created(self) -> int:
        return self.created["image"]

    @property
    def artwork_tags_created(self) -> int:
        return self.created["artwork_tag"]

    @property
    def is_empty(self) -> bool:
        return not any(self.created.values()) and not any(self.duplicates_skipped.values()) and not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": dict(self.created),
            "updated": dict(self.updated),
            "duplicates_skipped": dict(self.duplicates_skipped),
            "errors": [e.to_dict() for e in self.errors],
            "fallbacks": list(self.fallbacks),
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@dataclass
class ScanError:
    kind: ScanErrorKind
    message: str
    path: str | None = None
    external_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "path": self.path,
            "external_id": self.external_id,
        }


@dataclass
class ScanResult:
    """Aggregate audit record of one scan."""

    scan_root: str = ""
    force_update: bool = False
    state: ScanState = ScanState.IDLE
    total_artworks: int = 0
    processed_artworks: int = 0
    new_artists: int = 0
    new_artworks: int = 0
    new_images: int = 0
    new_tags: int = 0
    new_artwork_tags: int = 0
    skipped_artworks: int = 0
    duplicate_errors: int = 0
    removed_artworks: int = 0
    removed_artists: int = 0
    removed_tags: int = 0
    removed_images: int = 0
    orphans_removed: dict[str, int] = field(default_factory=dict)
    batches_flushed: int = 0
    batch_fallbacks: int = 0
    errors: list[ScanError] = field(default_factory=list)
    processing_time_ms: float = 0.0

    def add_error(
        self,
        kind: ScanErrorKind,
        message: str,
        *,
        path: str | None = None,
        external_id: str | None = None,
    ) -> None:
        self.errors.append(ScanError(kind=kind, message=message, path=path, external_id=external_id))

    def absorb_batch(self, batch: BatchResult) -> None:
        self.new_artists += batch.artists_created
        self.new_artworks += batch.artworks_created
        self.new_images += batch.images_created
        self.new_tags += batch.tags_created
        self.new_artwork_tags += batch.artwork_tags_created
        self.batches_flushed += 1
        self.batch_fallbacks += len(batch.fallbacks)
        for err in batch.errors:
            ext_id = err.payload.get("external_id") or err.payload.get("artwork_external_id")
            self.add_error(
                ScanErrorKind.BATCH_WRITE_ERROR,
                f"{err.kind}: {err.message}",
                path=err.payload.get("path"),
                external_id=str(ext_id) if ext_id else None,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_root": self.scan_root,
            "force_update": self.force_update,
            "state": self.state.value,
            "total_artworks": self.total_artworks,
            "processed_artworks": self.processed_artworks,
            "new_artists": self.new_artists,
            "new_artworks": self.new_artworks,
            "new_images": self.new_images,
            "new_tags": self.new_tags,
            "new_artwork_tags": self.new_artwork_tags,
            "skipped_artworks": self.skipped_artworks,
            "duplicate_errors": self.duplicate_errors,
            "removed_artworks": self.removed_artworks,
            "removed_artists": self.removed_artists,
            "removed_tags": self.removed_tags,
            "removed_images": self.removed_images,
            "orphans_removed": dict(self.orphans_removed),
            "batches_flushed": self.batches_flushed,
            "batch_fallbacks": self.batch_fallbacks,
            "error_count": len(self.errors),
            "errors": [e.to_dict() for e in self.errors],
            "processing_time_ms": round(self.processing_time_ms, 2),
        }


@dataclass(frozen=True)
class ScanProgress:
    """One progress event delivered to the caller's sink."""

    phase: ScanState
    message: str
    current: int | None = None
    total: int | None = None
    percentage: float | None = None
    estimated_seconds_remaining: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
        }

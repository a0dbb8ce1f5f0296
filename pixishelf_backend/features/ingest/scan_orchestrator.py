"""
ScanOrchestrator: drives one library scan from discovery to cleanup.

idle -> discovering -> resolving -> processing -> cleanup -> complete, with
cancelled reachable from any running phase and failed only when the scan
root cannot be walked. Every piece of mutable state lives on a `ScanContext`
created per scan and dropped when it ends.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ... import config
from ...path_utils import to_stored_path
from ...shared import ErrorCode, Result, elapsed_ms, get_logger, log_scan_event, log_success, timer
from ...utils import chunked
from .batch_writer import BatchWriter
from .entity_cache import EntityCache
from .flow_controller import FlowController, FlowSettings
from .fs_walker import MetadataWalker
from .media_associator import collect, directory_created_at
from .metadata_parser import parse_file
from .models import (
    ArtworkDraft,
    DiscoveredArtwork,
    MediaFile,
    MetadataRecord,
    ScanErrorKind,
    ScanResult,
    ScanState,
    StagedArtwork,
    StagedArtworkTag,
    StagedImage,
    StagedRow,
    StagedTag,
)
from .progress import CancellationToken, ProgressSink, ProgressTracker
from .store import LibraryStore

logger = get_logger(__name__)


class ScanAlreadyRunning(RuntimeError):
    """A second scan was requested while one is active."""


@dataclass(frozen=True)
class ScanSettings:
    chunk_size: int = config.SCAN_CHUNK_SIZE
    max_depth: int = config.SCAN_MAX_DEPTH
    cache_warm_max_rows: int = config.CACHE_WARM_MAX_ROWS
    probe_dimensions: bool = config.PROBE_DIMENSIONS
    memory_wait_max_s: float = config.MEMORY_WAIT_MAX_S
    to_thread_timeout_s: float = config.TO_THREAD_TIMEOUT_S
    batch_timeout_s: float = config.DB_BATCH_TIMEOUT
    flow: FlowSettings = field(default_factory=FlowSettings)


@dataclass
class ScanContext:
    """State owned by exactly one scan invocation."""

    root: Path
    force_update: bool
    token: CancellationToken
    cache: EntityCache
    writer: BatchWriter
    flow: FlowController
    progress: ProgressTracker
    result: ScanResult
    flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending_total: int = 0
    processed: int = 0

    @property
    def state(self) -> ScanState:
        return self.result.state


class ScanOrchestrator:
    """
    Runs scans against one `LibraryStore`, one at a time.

    `memory_probe` is handed to each scan's FlowController; tests use it to
    simulate memory pressure.
    """

    def __init__(
        self,
        store: LibraryStore,
        settings: ScanSettings | None = None,
        *,
        memory_probe: Callable[[], int | None] | None = None,
    ) -> None:
        self._store = store
        self.settings = settings or ScanSettings()
        self._memory_probe = memory_probe
        self._lock = asyncio.Lock()
        self._context: ScanContext | None = None
        self._last_state = ScanState.IDLE

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def state(self) -> ScanState:
        if self._context is not None:
            return self._context.state
        return self._last_state

    @property
    def context(self) -> ScanContext | None:
        return self._context

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation of the running scan. False when idle."""
        ctx = self._context
        if ctx is None or ctx.state.is_terminal:
            return False
        ctx.token.cancel(reason)
        return True

    def _new_context(
        self,
        root: Path,
        force_update: bool,
        on_progress: ProgressSink | None,
        token: CancellationToken,
    ) -> ScanContext:
        cache = EntityCache(self._store)
        flow_kwargs: dict[str, Any] = {}
        if self._memory_probe is not None:
            flow_kwargs["memory_probe"] = self._memory_probe
        return ScanContext(
            root=root,
            force_update=force_update,
            token=token,
            cache=cache,
            writer=BatchWriter(self._store, cache, batch_timeout=self.settings.batch_timeout_s),
            flow=FlowController(self.settings.flow, **flow_kwargs),
            progress=ProgressTracker(on_progress, token),
            result=ScanResult(scan_root=str(root), force_update=force_update),
        )

    async def scan(
        self,
        scan_root: str | Path,
        force_update: bool = False,
        on_progress: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ScanResult:
        """
        Ingest every artwork folder under `scan_root`.

        Never raises for per-artwork or per-batch problems; those end up in
        `ScanResult.errors`. Raises `ScanAlreadyRunning` when called while
        another scan is active.
        """
        if self._lock.locked():
            raise ScanAlreadyRunning("A scan is already running")
        async with self._lock:
            root = Path(scan_root).expanduser()
            ctx = self._new_context(root, bool(force_update), on_progress, cancel_token or CancellationToken())
            self._context = ctx
            start = time.perf_counter()
            log_scan_event(logger, logging.INFO, "Starting library scan", root=str(root), force=ctx.force_update)
            try:
                await self._run(ctx)
            finally:
                ctx.result.processing_time_ms = elapsed_ms(start)
                self._last_state = ctx.state
                self._context = None
            self._log_summary(ctx)
            return ctx.result

    def _set_state(self, ctx: ScanContext, state: ScanState) -> None:
        logger.debug("Scan state %s -> %s", ctx.result.state.value, state.value)
        ctx.result.state = state

    async def _run(self, ctx: ScanContext) -> None:
        self._set_state(ctx, ScanState.DISCOVERING)
        await ctx.progress.emit(ScanState.DISCOVERING, "Discovering metadata files", current=0, total=1)

        pending = await self._discover(ctx)
        if pending is None:
            return
        if await self._cancelled(ctx):
            return

        self._set_state(ctx, ScanState.RESOLVING)
        await ctx.progress.emit(ScanState.RESOLVING, "Loading artists and tags", current=0, total=1)
        warmed = await ctx.cache.warm(self.settings.cache_warm_max_rows)
        if warmed.ok:
            logger.debug("Entity cache warmed: %s", warmed.data)
        else:
            logger.warning("Entity cache warm-up failed: %s", warmed.error)
        await ctx.progress.emit(ScanState.RESOLVING, "Artists and tags loaded", current=1, total=1)
        if await self._cancelled(ctx):
            return

        self._set_state(ctx, ScanState.PROCESSING)
        ctx.pending_total = len(pending)
        await ctx.progress.emit(
            ScanState.PROCESSING,
            f"Processing {len(pending)} artworks",
            current=0,
            total=len(pending),
        )
        for chunk in chunked(pending, self.settings.chunk_size):
            if ctx.token.cancelled:
                break
            await self._process_chunk(ctx, chunk)
            await self._flush(ctx)
        if await self._cancelled(ctx):
            return

        self._set_state(ctx, ScanState.CLEANUP)
        await ctx.progress.emit(ScanState.CLEANUP, "Removing orphaned rows", current=0, total=1)
        with timer("Orphan cleanup", logger):
            cleaned = await self._store.cleanup_orphans()
        if cleaned.ok:
            ctx.result.orphans_removed = dict(cleaned.data or {})
        else:
            logger.warning("Orphan cleanup failed: %s", cleaned.error)
        await ctx.progress.emit(ScanState.CLEANUP, "Cleanup finished", current=1, total=1)
        if await self._cancelled(ctx):
            return

        self._set_state(ctx, ScanState.COMPLETE)
        r = ctx.result
        await ctx.progress.emit(
            ScanState.COMPLETE,
            f"Scan complete: {r.new_artworks} new, {r.skipped_artworks} skipped, {len(r.errors)} errors",
            current=r.total_artworks,
            total=r.total_artworks,
        )

    async def _fail(self, ctx: ScanContext, message: str) -> None:
        ctx.result.add_error(ScanErrorKind.DISCOVERY_FAILURE, message, path=str(ctx.root))
        self._set_state(ctx, ScanState.FAILED)
        await ctx.progress.emit(ScanState.FAILED, message)

    async def _discover(self, ctx: ScanContext) -> list[DiscoveredArtwork] | None:
        """Wipe (forced scans), walk and filter. None means the scan is over."""
        root = ctx.root
        try:
            is_dir = root.is_dir()
        except OSError:
            is_dir = False
        if not is_dir:
            await self._fail(ctx, f"Scan root does not exist or is not a directory: {root}")
            return None

        if ctx.force_update:
            await ctx.progress.emit(ScanState.DISCOVERING, "Clearing library for full rescan", current=0, total=1)
            wiped = await self._store.delete_all()
            if not wiped.ok:
                await self._fail(ctx, f"Failed to clear library: {wiped.error}")
                return None
            removed = wiped.data or {}
            ctx.result.removed_artworks = int(removed.get("artworks", 0))
            ctx.result.removed_artists = int(removed.get("artists", 0))
            ctx.result.removed_tags = int(removed.get("tags", 0))
            ctx.result.removed_images = int(removed.get("images", 0))
            log_scan_event(logger, logging.INFO, "Library cleared", **removed)

        walker = MetadataWalker(self.settings.max_depth)
        found = await asyncio.to_thread(walker.discover, root)
        if not found.ok or found.data is None:
            await self._fail(ctx, found.error or "Discovery failed")
            return None
        discovery = found.data

        for dup in discovery.duplicates:
            ctx.result.duplicate_errors += 1
            ctx.result.add_error(
                ScanErrorKind.DUPLICATE_ID,
                f"Duplicate artwork id {dup.external_id}; keeping the first metadata file",
                path=dup.metadata_path,
                external_id=dup.external_id,
            )
        ctx.result.total_artworks = len(discovery.artworks)

        pending = list(discovery.artworks)
        if not ctx.force_update and pending:
            existing = await self._store.find_existing_artwork_ids(discovery.external_ids)
            if existing.ok:
                known = existing.data or set()
                pending = [a for a in pending if a.external_id not in known]
                ctx.result.skipped_artworks += len(discovery.artworks) - len(pending)
            else:
                logger.warning("Existing artwork lookup failed, processing all: %s", existing.error)

        await ctx.progress.emit(
            ScanState.DISCOVERING,
            f"Found {len(discovery.artworks)} artworks, {len(pending)} to process",
            current=1,
            total=1,
        )
        return pending

    async def _cancelled(self, ctx: ScanContext) -> bool:
        """Poll the token; on cancellation flush what is staged and finish."""
        if not ctx.token.cancelled:
            return False
        await self._flush(ctx)
        self._set_state(ctx, ScanState.CANCELLED)
        await ctx.progress.emit(
            ScanState.CANCELLED,
            f"Scan cancelled after {ctx.processed} artworks",
            current=ctx.processed,
            total=ctx.pending_total or None,
        )
        return True

    async def _process_chunk(self, ctx: ScanContext, chunk: list[DiscoveredArtwork]) -> None:
        items: Iterator[DiscoveredArtwork] = iter(chunk)
        running: set[asyncio.Task[float]] = set()
        exhausted = False
        try:
            while True:
                while not exhausted and not ctx.token.cancelled and len(running) < ctx.flow.concurrency:
                    if ctx.flow.is_memory_constrained():
                        await self._flush(ctx)
                        await ctx.flow.wait_for_memory(ctx.token, self.settings.memory_wait_max_s)
                        if ctx.token.cancelled:
                            break
                    item = next(items, None)
                    if item is None:
                        exhausted = True
                        break
                    running.add(asyncio.create_task(self._process_artwork(ctx, item)))
                if not running:
                    return
                done, running = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    ctx.flow.next_concurrency_level(task.result())
                if ctx.flow.should_flush():
                    await self._flush(ctx)
        finally:
            for task in running:
                task.cancel()

    async def _to_thread(self, fn: Callable[..., Result[Any]], *args: Any, **kwargs: Any) -> Result[Any]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.settings.to_thread_timeout_s,
            )
        except asyncio.TimeoutError:
            return Result.Err(ErrorCode.TIMEOUT, f"{getattr(fn, '__name__', 'operation')} timed out")

    async def _process_artwork(self, ctx: ScanContext, item: DiscoveredArtwork) -> float:
        """Parse, associate and stage one artwork. Returns the duration in ms."""
        start = time.perf_counter()
        try:
            await self._ingest(ctx, item)
        except Exception as exc:
            logger.exception("Unexpected failure while processing artwork %s", item.external_id)
            ctx.result.add_error(
                ScanErrorKind.ASSOCIATION_ERROR,
                f"Unexpected error: {exc}",
                path=item.metadata_path,
                external_id=item.external_id,
            )
            ctx.result.skipped_artworks += 1
        ctx.processed += 1
        ctx.result.processed_artworks = ctx.processed
        await ctx.progress.emit(
            ScanState.PROCESSING,
            f"Processed {ctx.processed}/{ctx.pending_total} artworks",
            current=ctx.processed,
            total=ctx.pending_total,
        )
        return elapsed_ms(start)

    async def _ingest(self, ctx: ScanContext, item: DiscoveredArtwork) -> None:
        parsed = await self._to_thread(parse_file, item.metadata_path)
        if not parsed.ok or parsed.data is None:
            ctx.result.add_error(
                ScanErrorKind.PARSE_ERROR,
                parsed.error or "Invalid metadata",
                path=item.metadata_path,
                external_id=item.external_id,
            )
            return
        record: MetadataRecord = parsed.data
        if record.external_id != item.external_id:
            ctx.result.add_error(
                ScanErrorKind.PARSE_ERROR,
                f"ID {record.external_id} does not match file name id {item.external_id}",
                path=item.metadata_path,
                external_id=item.external_id,
            )
            return

        media = await self._to_thread(
            collect,
            item.directory,
            item.external_id,
            probe=self.settings.probe_dimensions,
        )
        if not media.ok:
            self._skip(ctx, item, media.error or "Cannot read artwork directory")
            return
        if not media.data:
            self._skip(ctx, item, "No media files found")
            return
        created = await self._to_thread(directory_created_at, item.directory)
        if not created.ok:
            logger.debug("No directory time for %s: %s", item.directory, created.error)

        try:
            rows = self._build_rows(ctx, record, media.data, created.data if created.ok else None)
        except ValueError as exc:
            ctx.result.add_error(
                ScanErrorKind.PARSE_ERROR,
                str(exc),
                path=item.metadata_path,
                external_id=item.external_id,
            )
            return
        ctx.writer.stage_bundle(rows)
        ctx.flow.record_staged(1)

    def _skip(self, ctx: ScanContext, item: DiscoveredArtwork, message: str) -> None:
        ctx.result.skipped_artworks += 1
        ctx.result.add_error(
            ScanErrorKind.ASSOCIATION_ERROR,
            message,
            path=item.directory,
            external_id=item.external_id,
        )

    def _build_rows(
        self,
        ctx: ScanContext,
        record: MetadataRecord,
        media: list[MediaFile],
        created_at: datetime | None = None,
    ) -> list[StagedRow]:
        """All staged rows for one artwork; built fully before any is staged."""
        rows: list[StagedRow] = []
        artist = ctx.cache.staged_artist(record.author_id, record.author_name)
        if not ctx.cache.has_artist(artist.user_id):
            rows.append(artist)
        draft = ArtworkDraft.from_record(
            record,
            artist_key=artist.user_id,
            image_count=len(media),
            directory_created_at=created_at,
        )
        rows.append(StagedArtwork(draft=draft))
        for m in media:
            rows.append(
                StagedImage(
                    artwork_external_id=record.external_id,
                    path=to_stored_path(m.path, ctx.root),
                    size=m.size,
                    sort_order=m.sort_order,
                    width=m.width,
                    height=m.height,
                )
            )
        for tag in record.tags:
            if not ctx.cache.has_tag(tag):
                rows.append(StagedTag(name=tag))
            rows.append(StagedArtworkTag(artwork_external_id=record.external_id, tag_name=tag))
        return rows

    async def _flush(self, ctx: ScanContext) -> None:
        async with ctx.flush_lock:
            staged_artworks = ctx.writer.pending_by_kind()["artwork"]
            if not ctx.writer.pending:
                return
            batch = await ctx.writer.flush()
            ctx.flow.reset_after_flush()
            ctx.result.absorb_batch(batch)
            ctx.result.skipped_artworks += max(0, staged_artworks - batch.artworks_created)
            log_scan_event(
                logger,
                logging.DEBUG,
                "Batch flushed",
                artworks=batch.artworks_created,
                images=batch.images_created,
                errors=len(batch.errors) or None,
                fallbacks=",".join(batch.fallbacks) or None,
            )

    def _log_summary(self, ctx: ScanContext) -> None:
        r = ctx.result
        context = {
            "state": r.state.value,
            "total": r.total_artworks,
            "new_artworks": r.new_artworks,
            "new_images": r.new_images,
            "skipped": r.skipped_artworks,
            "errors": len(r.errors),
            "duration_ms": round(r.processing_time_ms, 1),
        }
        if r.state == ScanState.COMPLETE:
            ctx_text = ", ".join(f"{k}={v}" for k, v in context.items())
            log_success(logger, f"Library scan complete ({ctx_text})")
        else:
            log_scan_event(logger, logging.WARNING, "Library scan ended", **context)

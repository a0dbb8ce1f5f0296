"""
Scan service - single-flight scan runner shared by the HTTP routes and CLI.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from ...path_utils import validate_directory
from ...settings import AppSettings
from ...shared import ErrorCode, Result, get_logger
from .models import ScanProgress, ScanResult, ScanState
from .progress import CancellationToken, ProgressSink
from .scan_orchestrator import ScanAlreadyRunning, ScanOrchestrator

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256


class ScanService:
    """
    Owns the orchestrator, the running scan task and its progress fan-out.

    Progress events are pushed to every subscriber queue; a full queue drops
    the event for that subscriber only.
    """

    def __init__(self, orchestrator: ScanOrchestrator, settings: AppSettings):
        self._orchestrator = orchestrator
        self._settings = settings
        self._start_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._token: CancellationToken | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self._last_progress: ScanProgress | None = None
        self._last_result: ScanResult | None = None

    @property
    def is_running(self) -> bool:
        return self._orchestrator.is_running or (self._task is not None and not self._task.done())

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def _publish(self, event: ScanProgress) -> None:
        self._last_progress = event
        payload = event.to_dict()
        for q in list(self._subscribers):
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                logger.debug("Dropping progress event for slow subscriber")

    def status(self) -> dict[str, Any]:
        progress = self._last_progress
        return {
            "scanning": self.is_running,
            "state": self._orchestrator.state.value,
            "message": progress.message if progress else None,
            "progress": progress.to_dict() if progress else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }

    async def _resolve_root(self, scan_root: str | None) -> Result[Path]:
        raw = scan_root or await self._settings.get_scan_path()
        if not raw:
            return Result.Err(ErrorCode.INVALID_INPUT, "No scan path configured")
        resolved = validate_directory(raw)
        if resolved is None:
            return Result.Err(ErrorCode.NOT_FOUND, f"Scan path is not an existing directory: {raw}")
        return Result.Ok(resolved)

    async def run_scan(
        self,
        scan_root: str | None = None,
        force_update: bool = False,
        on_progress: ProgressSink | None = None,
    ) -> Result[ScanResult]:
        """Run a scan to completion in the caller's task."""
        root = await self._resolve_root(scan_root)
        if not root.ok or root.data is None:
            return Result.Err(root.code, root.error or "Invalid scan path")
        if self.is_running:
            return Result.Err(ErrorCode.SCAN_IN_PROGRESS, "A scan is already running")
        return await self._execute(root.data, force_update, on_progress, CancellationToken())

    async def _execute(
        self,
        root: Path,
        force_update: bool,
        on_progress: ProgressSink | None,
        token: CancellationToken,
    ) -> Result[ScanResult]:
        self._token = token

        async def _sink(event: ScanProgress) -> None:
            self._publish(event)
            if on_progress is not None:
                out = on_progress(event)
                if asyncio.iscoroutine(out):
                    await out

        try:
            result = await self._orchestrator.scan(root, force_update, _sink, token)
        except ScanAlreadyRunning as exc:
            return Result.Err(ErrorCode.SCAN_IN_PROGRESS, str(exc))
        except Exception as exc:
            logger.exception("Scan failed unexpectedly")
            return Result.Err(ErrorCode.SCAN_FAILED, f"Scan failed: {exc}")
        finally:
            self._token = None
        self._last_result = result
        if result.state == ScanState.COMPLETE:
            saved = await self._settings.set_last_scan_time()
            if not saved.ok:
                logger.warning("Failed to record last scan time: %s", saved.error)
        return Result.Ok(result)

    async def start_scan(self, scan_root: str | None = None, force_update: bool = False) -> Result[dict[str, Any]]:
        """Start a scan in the background; rejected while another one runs."""
        async with self._start_lock:
            if self.is_running:
                return Result.Err(ErrorCode.SCAN_IN_PROGRESS, "A scan is already running")
            root = await self._resolve_root(scan_root)
            if not root.ok or root.data is None:
                return Result.Err(root.code, root.error or "Invalid scan path")
            token = CancellationToken()
            self._token = token
            self._last_progress = None
            self._task = asyncio.create_task(self._execute(root.data, bool(force_update), None, token))
        return Result.Ok({"started": True, "scan_root": str(root.data), "force_update": bool(force_update)})

    def cancel(self) -> Result[bool]:
        """Request cancellation of the running scan; Ok(False) when idle."""
        if not self.is_running:
            return Result.Ok(False)
        if self._token is not None:
            self._token.cancel("cancelled by request")
            return Result.Ok(True)
        return Result.Ok(self._orchestrator.cancel("cancelled by request"))

    async def wait(self) -> Result[ScanResult] | None:
        """Wait for the background scan started by `start_scan`, if any."""
        task = self._task
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        if self._task is not None and not self._task.done():
            self.cancel()
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=30.0)
            except asyncio.TimeoutError:
                logger.warning("Scan did not stop within 30s; abandoning it")

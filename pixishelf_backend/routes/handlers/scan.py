"""
Scan endpoints: run, start, stream, cancel and status.
"""
from __future__ import annotations

import json
from typing import Any

from aiohttp import web

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.features.ingest import ScanCancelled, ScanProgress, ScanResult, ScanState
from pixishelf_backend.shared import ErrorCode, Result, get_logger
from pixishelf_backend.utils import parse_bool

from ..core import _json_response, _read_json, _require_services

logger = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _scan_args(body: dict[str, Any]) -> tuple[str | None, bool]:
    raw_root = body.get("path") or body.get("scan_root")
    scan_root = str(raw_root).strip() if raw_root else None
    force = parse_bool(body.get("force", body.get("force_update")), False)
    return scan_root or None, force


def _format_sse(event: str, data: Any) -> bytes:
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def _terminal_event(result: ScanResult) -> str:
    if result.state == ScanState.COMPLETE:
        return "complete"
    if result.state == ScanState.CANCELLED:
        return "cancelled"
    return "error"


async def _send_event(response: web.StreamResponse, event: str, data: Any) -> bool:
    try:
        await response.write(_format_sse(event, data))
        return True
    except (ConnectionResetError, RuntimeError) as exc:
        logger.debug("SSE client went away: %s", exc)
        return False


def register_scan_routes(routes: web.RouteTableDef) -> None:
    """Register scan routes."""

    @routes.get(f"{API_PREFIX}/scan/status")
    async def scan_status(request):
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        return _json_response(Result.Ok(svc["scan"].status()))

    @routes.post(f"{API_PREFIX}/scan")
    async def run_scan(request):
        """
        Run a scan to completion and return its result.

        Body: {"path"?: str, "force"?: bool}
        """
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        body_res = await _read_json(request)
        if not body_res.ok:
            return _json_response(body_res)
        scan_root, force = _scan_args(body_res.data or {})
        result = await svc["scan"].run_scan(scan_root, force)
        if not result.ok:
            return _json_response(result)
        return _json_response(result.map(lambda r: r.to_dict()))

    @routes.post(f"{API_PREFIX}/scan/start")
    async def start_scan(request):
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        body_res = await _read_json(request)
        if not body_res.ok:
            return _json_response(body_res)
        scan_root, force = _scan_args(body_res.data or {})
        return _json_response(await svc["scan"].start_scan(scan_root, force))

    @routes.post(f"{API_PREFIX}/scan/cancel")
    async def cancel_scan(request):
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        cancelled = svc["scan"].cancel()
        return _json_response(cancelled.map(lambda ok: {"cancelled": bool(ok)}))

    @routes.get(f"{API_PREFIX}/scan/stream")
    async def stream_scan(request):
        """
        Run a scan and stream its progress as Server-Sent Events.

        Query: ?force=true&path=...
        """
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        scan_root, force = _scan_args(dict(request.query))
        service = svc["scan"]

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        if service.is_running:
            await _send_event(response, "error", {"code": ErrorCode.SCAN_IN_PROGRESS.value, "message": "Scan already in progress"})
            return response

        async def _on_progress(event: ScanProgress) -> None:
            if not await _send_event(response, "progress", event.to_dict()):
                raise ScanCancelled("client disconnected")

        result = await service.run_scan(scan_root, force, on_progress=_on_progress)
        if not result.ok or result.data is None:
            message = "Scan already in progress" if result.code == ErrorCode.SCAN_IN_PROGRESS else result.error
            await _send_event(response, "error", {"code": result.code, "message": message})
            return response

        scan_result: ScanResult = result.data
        await _send_event(response, _terminal_event(scan_result), scan_result.to_dict())
        try:
            await response.write_eof()
        except (ConnectionResetError, RuntimeError):
            pass
        return response

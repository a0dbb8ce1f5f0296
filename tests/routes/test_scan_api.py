import json

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.features.ingest import ScanResult, ScanState
from pixishelf_backend.routes.handlers import scan as scan_mod
from pixishelf_backend.shared import ErrorCode, Result


def _build_scan_app() -> web.Application:
    app = web.Application()
    routes = web.RouteTableDef()
    scan_mod.register_scan_routes(routes)
    app.add_routes(routes)
    return app


class _ScanService:
    is_running = False

    def __init__(self):
        self.calls = []

    def status(self):
        return {"scanning": False, "state": "idle", "message": None, "progress": None, "last_result": None}

    async def run_scan(self, scan_root=None, force_update=False, on_progress=None):
        self.calls.append((scan_root, force_update))
        return Result.Ok(ScanResult(scan_root=scan_root or "", state=ScanState.COMPLETE, new_artworks=3))

    async def start_scan(self, scan_root=None, force_update=False):
        self.calls.append((scan_root, force_update))
        return Result.Err(ErrorCode.SCAN_IN_PROGRESS, "A scan is already running")

    def cancel(self):
        return Result.Ok(False)


def _patch(monkeypatch, *, svc=None, body=None):
    async def _require_services():
        return svc, None

    async def _read_json(_request):
        return Result.Ok(body or {})

    monkeypatch.setattr(scan_mod, "_require_services", _require_services)
    monkeypatch.setattr(scan_mod, "_read_json", _read_json)


async def _call(app: web.Application, method: str, path: str):
    req = make_mocked_request(method, path, app=app)
    match = await app.router.resolve(req)
    resp = await match.handler(req)
    return json.loads(resp.text)


@pytest.mark.asyncio
async def test_scan_routes_service_unavailable(monkeypatch) -> None:
    async def _require_services():
        return None, Result.Err("SERVICE_UNAVAILABLE", "down")

    monkeypatch.setattr(scan_mod, "_require_services", _require_services)
    body = await _call(_build_scan_app(), "GET", f"{API_PREFIX}/scan/status")
    assert body["ok"] is False
    assert body["code"] == "SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_scan_status_payload(monkeypatch) -> None:
    _patch(monkeypatch, svc={"scan": _ScanService()})
    body = await _call(_build_scan_app(), "GET", f"{API_PREFIX}/scan/status")
    assert body["ok"] is True
    assert body["data"]["state"] == "idle"
    assert body["data"]["scanning"] is False


@pytest.mark.asyncio
async def test_run_scan_passes_path_and_force(monkeypatch) -> None:
    service = _ScanService()
    _patch(monkeypatch, svc={"scan": service}, body={"path": " /library ", "force": "true"})
    body = await _call(_build_scan_app(), "POST", f"{API_PREFIX}/scan")
    assert body["ok"] is True
    assert body["data"]["state"] == "complete"
    assert body["data"]["new_artworks"] == 3
    assert service.calls == [("/library", True)]


@pytest.mark.asyncio
async def test_start_scan_reports_conflict(monkeypatch) -> None:
    _patch(monkeypatch, svc={"scan": _ScanService()})
    body = await _call(_build_scan_app(), "POST", f"{API_PREFIX}/scan/start")
    assert body["ok"] is False
    assert body["code"] == "SCAN_IN_PROGRESS"


@pytest.mark.asyncio
async def test_cancel_when_idle(monkeypatch) -> None:
    _patch(monkeypatch, svc={"scan": _ScanService()})
    body = await _call(_build_scan_app(), "POST", f"{API_PREFIX}/scan/cancel")
    assert body["ok"] is True
    assert body["data"] == {"cancelled": False}


def test_scan_args_defaults() -> None:
    assert scan_mod._scan_args({}) == (None, False)
    assert scan_mod._scan_args({"scan_root": "/x", "force_update": 1}) == ("/x", True)
    assert scan_mod._scan_args({"path": "   "}) == (None, False)


def test_format_sse_frame() -> None:
    frame = scan_mod._format_sse("progress", {"phase": "processing", "message": "Größe"})
    text = frame.decode("utf-8")
    assert text.startswith("event: progress\ndata: ")
    assert text.endswith("\n\n")
    assert json.loads(text.split("data: ", 1)[1]) == {"phase": "processing", "message": "Größe"}


def test_terminal_event_names() -> None:
    assert scan_mod._terminal_event(ScanResult(state=ScanState.COMPLETE)) == "complete"
    assert scan_mod._terminal_event(ScanResult(state=ScanState.CANCELLED)) == "cancelled"
    assert scan_mod._terminal_event(ScanResult(state=ScanState.FAILED)) == "error"

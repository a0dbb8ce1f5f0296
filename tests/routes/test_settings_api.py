import json
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.routes.handlers import settings as settings_mod
from pixishelf_backend.shared import Result


def _build_settings_app() -> web.Application:
    app = web.Application()
    routes = web.RouteTableDef()
    settings_mod.register_settings_routes(routes)
    app.add_routes(routes)
    return app


class _Scan:
    def __init__(self, running: bool = False):
        self.is_running = running


def _patch(monkeypatch, svc, body=None):
    async def _require_services():
        return svc, None

    async def _read_json(_request):
        return Result.Ok(body or {})

    monkeypatch.setattr(settings_mod, "_require_services", _require_services)
    monkeypatch.setattr(settings_mod, "_read_json", _read_json)


async def _call(method: str):
    app = _build_settings_app()
    req = make_mocked_request(method, f"{API_PREFIX}/settings/scan-path", app=app)
    match = await app.router.resolve(req)
    resp = await match.handler(req)
    return json.loads(resp.text)


@pytest.mark.asyncio
async def test_get_scan_path_defaults(monkeypatch, services) -> None:
    _patch(monkeypatch, services)
    body = await _call("GET")
    assert body["ok"] is True
    assert body["data"] == {"scan_path": None, "last_scan_time": None}


@pytest.mark.asyncio
async def test_set_scan_path_persists(monkeypatch, services, tmp_path: Path) -> None:
    library = tmp_path / "library"
    library.mkdir()
    _patch(monkeypatch, services, body={"scan_path": str(library)})
    body = await _call("POST")
    assert body["ok"] is True
    assert body["data"]["scan_path"] == str(library.resolve())
    assert await services["settings"].get_scan_path() == str(library.resolve())


@pytest.mark.asyncio
async def test_set_scan_path_requires_value(monkeypatch, services) -> None:
    _patch(monkeypatch, services, body={"scan_path": "  "})
    body = await _call("POST")
    assert body["ok"] is False
    assert body["code"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_set_scan_path_rejects_missing_directory(monkeypatch, services, tmp_path: Path) -> None:
    _patch(monkeypatch, services, body={"path": str(tmp_path / "missing")})
    body = await _call("POST")
    assert body["ok"] is False
    assert body["code"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_set_scan_path_blocked_while_scanning(monkeypatch, tmp_path: Path) -> None:
    _patch(monkeypatch, {"scan": _Scan(running=True), "settings": object()}, body={"scan_path": str(tmp_path)})
    body = await _call("POST")
    assert body["ok"] is False
    assert body["code"] == "SCAN_IN_PROGRESS"

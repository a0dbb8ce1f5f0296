import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.routes.handlers import health as health_mod
from pixishelf_backend.shared import Result


def _build_health_app() -> web.Application:
    app = web.Application()
    routes = web.RouteTableDef()
    health_mod.register_health_routes(routes)
    app.add_routes(routes)
    return app


async def _call() -> dict:
    app = _build_health_app()
    req = make_mocked_request("GET", f"{API_PREFIX}/health", app=app)
    match = await app.router.resolve(req)
    resp = await match.handler(req)
    return json.loads(resp.text)


@pytest.mark.asyncio
async def test_health_returns_service_error(monkeypatch) -> None:
    async def _require_services():
        return None, Result.Err("SERVICE_UNAVAILABLE", "down")

    monkeypatch.setattr(health_mod, "_require_services", _require_services)
    body = await _call()
    assert body.get("code") == "SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_health_reports_counts(monkeypatch, services) -> None:
    async def _require_services():
        return services, None

    monkeypatch.setattr(health_mod, "_require_services", _require_services)
    body = await _call()
    assert body["ok"] is True
    assert body["data"]["database"] == {"reachable": True, "error": None}
    assert body["data"]["counts"]["artworks"] == 0
    assert body["data"]["scanning"] is False
    assert body["data"]["state"] == "idle"


@pytest.mark.asyncio
async def test_health_db_timeout(monkeypatch) -> None:
    class _Store:
        async def counts(self):
            await asyncio.sleep(5)

    class _Scan:
        def status(self):
            return {"scanning": False, "state": "idle"}

    async def _require_services():
        return {"store": _Store(), "scan": _Scan()}, None

    monkeypatch.setattr(health_mod, "_require_services", _require_services)
    monkeypatch.setattr(health_mod, "DB_QUERY_TIMEOUT", 0.05)
    body = await _call()
    assert body["ok"] is True
    assert body["data"]["database"]["reachable"] is False
    assert body["data"]["counts"] is None

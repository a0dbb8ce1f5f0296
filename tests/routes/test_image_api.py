import json
import os
from email.utils import formatdate
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import make_mocked_request

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.routes.handlers import images as images_mod


class _Settings:
    def __init__(self, scan_path):
        self._scan_path = scan_path

    async def get_scan_path(self):
        return self._scan_path


def _build_image_app() -> web.Application:
    app = web.Application()
    routes = web.RouteTableDef()
    images_mod.register_image_routes(routes)
    app.add_routes(routes)
    return app


def _patch(monkeypatch, scan_path) -> None:
    async def _require_services():
        return {"settings": _Settings(scan_path)}, None

    monkeypatch.setattr(images_mod, "_require_services", _require_services)


async def _get(rel: str, headers: dict | None = None):
    app = _build_image_app()
    req = make_mocked_request("GET", f"{API_PREFIX}/images/{rel}", headers=headers or {}, app=app)
    match = await app.router.resolve(req)
    req = make_mocked_request(
        "GET", f"{API_PREFIX}/images/{rel}", headers=headers or {}, app=app, match_info=dict(match)
    )
    return await match.handler(req)


def _library(tmp_path: Path) -> Path:
    root = tmp_path / "library"
    (root / "alice" / "123").mkdir(parents=True)
    (root / "alice" / "123" / "123_p0.png").write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(8))
    return root


@pytest.mark.asyncio
async def test_serves_file_with_cache_headers(monkeypatch, tmp_path: Path) -> None:
    root = _library(tmp_path)
    _patch(monkeypatch, str(root))

    resp = await _get("alice/123/123_p0.png")
    assert resp.status == 200
    assert not isinstance(resp, web.FileResponse)
    path = root / "alice" / "123" / "123_p0.png"
    assert resp.body == path.read_bytes()
    st = path.stat()
    assert resp.headers["ETag"] == images_mod.build_etag(st)
    assert resp.headers["Content-Type"] == "image/png"
    assert "immutable" in resp.headers["Cache-Control"]
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_large_file_is_streamed(monkeypatch, tmp_path: Path) -> None:
    root = _library(tmp_path)
    _patch(monkeypatch, str(root))
    monkeypatch.setattr(images_mod, "IMAGE_INLINE_MAX_BYTES", 4)

    resp = await _get("alice/123/123_p0.png")
    assert isinstance(resp, web.FileResponse)
    assert resp.headers["Content-Type"] == "image/png"


@pytest.mark.asyncio
async def test_matching_etag_returns_304(monkeypatch, tmp_path: Path) -> None:
    root = _library(tmp_path)
    _patch(monkeypatch, str(root))
    etag = images_mod.build_etag((root / "alice" / "123" / "123_p0.png").stat())

    resp = await _get("alice/123/123_p0.png", headers={"If-None-Match": etag})
    assert resp.status == 304
    assert resp.headers["ETag"] == etag


@pytest.mark.asyncio
async def test_missing_file_is_404(monkeypatch, tmp_path: Path) -> None:
    root = _library(tmp_path)
    _patch(monkeypatch, str(root))
    resp = await _get("alice/123/123_p9.png")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_directory_is_404(monkeypatch, tmp_path: Path) -> None:
    root = _library(tmp_path)
    _patch(monkeypatch, str(root))
    resp = await _get("alice/123")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_no_scan_path_is_404(monkeypatch) -> None:
    _patch(monkeypatch, None)
    resp = await _get("a.png")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_service_error_is_json(monkeypatch) -> None:
    from pixishelf_backend.shared import Result

    async def _require_services():
        return None, Result.Err("SERVICE_UNAVAILABLE", "down")

    monkeypatch.setattr(images_mod, "_require_services", _require_services)
    resp = await _get("a.png")
    assert json.loads(resp.text)["code"] == "SERVICE_UNAVAILABLE"


def test_resolve_rejects_traversal(tmp_path: Path) -> None:
    root = _library(tmp_path)
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")

    for raw in ("../secret.txt", "alice/../../secret.txt", "", "."):
        resp = images_mod.resolve_image_path(root, raw)
        assert isinstance(resp, web.Response)
        assert resp.status == 403


def test_resolve_rejects_symlink_escape(tmp_path: Path) -> None:
    root = _library(tmp_path)
    outside = tmp_path / "outside.png"
    outside.write_bytes(b"x")
    link = root / "link.png"
    try:
        os.symlink(outside, link)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported")

    resp = images_mod.resolve_image_path(root, "link.png")
    assert isinstance(resp, web.Response)
    assert resp.status == 403


def test_resolve_accepts_backslashes(tmp_path: Path) -> None:
    root = _library(tmp_path)
    resolved = images_mod.resolve_image_path(root, "alice\\123\\123_p0.png")
    assert resolved == (root / "alice" / "123" / "123_p0.png").resolve()


def test_is_not_modified_rules() -> None:
    etag = 'W/"10-1000"'
    assert images_mod.is_not_modified({"If-None-Match": etag}, etag, 1.0)
    assert images_mod.is_not_modified({"If-None-Match": "*"}, etag, 1.0)
    assert not images_mod.is_not_modified({"If-None-Match": 'W/"other"'}, etag, 1.0)
    assert images_mod.is_not_modified({"If-Modified-Since": formatdate(100.0, usegmt=True)}, etag, 100.4)
    assert not images_mod.is_not_modified({"If-Modified-Since": formatdate(100.0, usegmt=True)}, etag, 200.0)
    assert not images_mod.is_not_modified({"If-Modified-Since": "garbage"}, etag, 1.0)
    assert not images_mod.is_not_modified({}, etag, 1.0)

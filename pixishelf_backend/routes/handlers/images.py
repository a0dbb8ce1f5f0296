"""
Image serving for stored (scan-root relative) image paths.
"""
from __future__ import annotations

import asyncio
import mimetypes
import os
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import Mapping

from aiohttp import web

from pixishelf_backend.config import API_PREFIX, IMAGE_CACHE_MAX_AGE_S, IMAGE_INLINE_MAX_BYTES
from pixishelf_backend.path_utils import is_within_root, safe_rel_path, validate_directory
from pixishelf_backend.shared import get_logger

from ..core import _json_response, _require_services

logger = get_logger(__name__)


def build_etag(st: os.stat_result) -> str:
    return f'W/"{st.st_size}-{int(st.st_mtime * 1000)}"'


def is_not_modified(headers: Mapping[str, str], etag: str, mtime: float) -> bool:
    """True when the conditional request headers match the current file."""
    if_none_match = headers.get("If-None-Match")
    if if_none_match:
        tags = {t.strip() for t in if_none_match.split(",")}
        return "*" in tags or etag in tags
    if_modified_since = headers.get("If-Modified-Since")
    if not if_modified_since:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        return False
    if since is None:
        return False
    return int(mtime) <= int(since.timestamp())


def resolve_image_path(scan_root: Path, raw: str) -> Path | web.Response:
    rel = safe_rel_path(raw)
    if rel is None or not str(rel) or str(rel) == ".":
        return web.Response(status=403, text="Path is not within the scan root")
    candidate = scan_root / rel
    try:
        resolved = candidate.resolve(strict=True)
    except (OSError, RuntimeError, ValueError):
        return web.Response(status=404, text="File not found")
    if not is_within_root(resolved, scan_root):
        return web.Response(status=403, text="Path is not within the scan root")
    if not resolved.is_file():
        return web.Response(status=404, text="File not found")
    return resolved


def register_image_routes(routes: web.RouteTableDef) -> None:
    """Register image routes."""

    @routes.get(API_PREFIX + "/images/{path:.*}")
    async def serve_image(request: web.Request) -> web.StreamResponse:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)

        scan_root = validate_directory(await svc["settings"].get_scan_path())
        if scan_root is None:
            return web.Response(status=404, text="No scan path configured")

        resolved = resolve_image_path(scan_root, request.match_info.get("path", ""))
        if isinstance(resolved, web.Response):
            return resolved

        try:
            st = resolved.stat()
        except OSError:
            return web.Response(status=404, text="File not found")

        etag = build_etag(st)
        cache_headers = {
            "ETag": etag,
            "Last-Modified": formatdate(st.st_mtime, usegmt=True),
            "Cache-Control": f"public, max-age={IMAGE_CACHE_MAX_AGE_S}, immutable",
        }
        if is_not_modified(request.headers, etag, st.st_mtime):
            return web.Response(status=304, headers=cache_headers)

        mime_type, _ = mimetypes.guess_type(str(resolved))
        content_headers = {
            **cache_headers,
            "Content-Type": mime_type or "application/octet-stream",
            "X-Content-Type-Options": "nosniff",
        }
        if st.st_size <= IMAGE_INLINE_MAX_BYTES:
            try:
                body = await asyncio.to_thread(resolved.read_bytes)
            except OSError as exc:
                logger.debug("Image read failed for %s: %s", resolved, exc)
                return web.Response(status=404, text="File not found")
            return web.Response(body=body, headers=content_headers)

        # Large files stream; aiohttp then sends and checks its own ETag/Last-Modified.
        response = web.FileResponse(path=str(resolved))
        response.headers.update(content_headers)
        return response

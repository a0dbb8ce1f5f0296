"""
Safe JSON request parsing with size limits.

Never raises to handlers; returns a Result.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

from aiohttp import web

from pixishelf_backend.shared import ErrorCode, Result

DEFAULT_MAX_JSON_BYTES = 1024 * 1024
MIN_JSON_BYTES = 1024
REQUEST_STREAM_CHUNK_BYTES = 64 * 1024


def _max_json_bytes() -> int:
    raw = os.environ.get("PIXISHELF_MAX_JSON_SIZE", "")
    try:
        n = int(raw) if raw else 0
    except ValueError:
        n = 0
    return n if n > 0 else DEFAULT_MAX_JSON_BYTES


async def _read_json(request: web.Request, *, max_bytes: Optional[int] = None) -> Result[dict]:
    """
    Read and decode a JSON object body with a strict max size.

    An empty body decodes to `{}`.
    """
    limit = max(MIN_JSON_BYTES, int(max_bytes) if max_bytes is not None else _max_json_bytes())

    cl = request.headers.get("Content-Length")
    if cl:
        try:
            size = int(cl)
        except ValueError:
            size = 0
        if size > limit:
            return Result.Err(ErrorCode.INVALID_INPUT, f"JSON body too large ({size} > {limit})", limit=limit, size=size)

    buf = bytearray()
    try:
        async for chunk in request.content.iter_chunked(REQUEST_STREAM_CHUNK_BYTES):
            buf.extend(chunk)
            if len(buf) > limit:
                return Result.Err(ErrorCode.INVALID_INPUT, f"JSON body too large (> {limit})", limit=limit, size=len(buf))
    except Exception as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Failed to read request body: {exc}")
    return _decode_and_parse_json_dict(bytes(buf))


def _decode_and_parse_json_dict(body: bytes) -> Result[dict]:
    try:
        text = body.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Invalid UTF-8 JSON body: {exc}")
    try:
        parsed: Any = json.loads(text) if text.strip() else {}
    except ValueError as exc:
        return Result.Err(ErrorCode.INVALID_JSON, f"Invalid JSON body: {exc}")
    if not isinstance(parsed, dict):
        return Result.Err(ErrorCode.INVALID_JSON, "JSON body must be an object")
    return Result.Ok(parsed)

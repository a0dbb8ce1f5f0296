"""
Response utilities for route handlers.
"""

import math

from aiohttp import web

from pixishelf_backend.shared import Result, sanitize_error_message


def safe_error_message(exc: Exception, generic_message: str) -> str:
    """Client-facing message; details only when `PIXISHELF_DEBUG` is on."""
    return sanitize_error_message(exc, generic_message)


def _json_response(result: Result, status: int | None = None) -> web.Response:
    """
    Convert a Result to a JSON response.

    Business and validation errors return HTTP 200 with `ok: false`; an
    explicit status is only used for genuine server failures.
    """
    payload = _sanitize_json_payload(result.to_dict())
    response = web.json_response(payload, status=200 if status is None else status)
    retry_after = (result.meta or {}).get("retry_after")
    if retry_after is not None:
        response.headers["Retry-After"] = str(int(retry_after))
    return response


def _sanitize_json_payload(value):
    """Replace NaN/Infinity with None, recursing through containers."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {k: _sanitize_json_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_json_payload(v) for v in value]
    return value

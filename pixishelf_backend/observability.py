"""
Observability helpers (request id + timing) for aiohttp routes.
"""

from __future__ import annotations

import logging
import time
from typing import Any
from uuid import uuid4

from aiohttp import web

from .config import API_PREFIX
from .shared import get_logger, log_structured, request_id_var
from .utils import env_bool, env_float

logger = get_logger(__name__)

_DEFAULT_SLOW_MS = 750.0

# Connection errors raised when the client goes away mid-response.
_CLIENT_DISCONNECT_ERRNO = frozenset({104, 32, 9, 10053, 10054})


def _is_client_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)):
        return True
    if isinstance(exc, OSError):
        return getattr(exc, "errno", None) in _CLIENT_DISCONNECT_ERRNO
    return False


def _get_request_id(request: web.Request) -> str:
    rid = (request.headers.get("X-Request-ID") or "").strip()
    return rid[:64] if rid else uuid4().hex


def _should_log(path: str, *, status: int | None, duration_ms: float) -> bool:
    if not path.startswith(API_PREFIX):
        return False
    if env_bool("PIXISHELF_OBS_LOG_ALL", False):
        return True
    if status is not None and status >= 400:
        return True
    if path.startswith(f"{API_PREFIX}/health") or path.startswith(f"{API_PREFIX}/scan/stream"):
        return False
    return duration_ms >= env_float("PIXISHELF_OBS_SLOW_MS", _DEFAULT_SLOW_MS)


def build_request_log_fields(request: web.Request, *, status: int | None, duration_ms: float) -> dict[str, Any]:
    return {
        "request_id": request.get("pixishelf_request_id"),
        "method": request.method,
        "path": request.path,
        "status": status,
        "duration_ms": round(duration_ms, 1),
    }


@web.middleware
async def request_context_middleware(request: web.Request, handler):
    """Add request-id correlation and lightweight request logging context."""
    rid = _get_request_id(request)
    request["pixishelf_request_id"] = rid
    token = request_id_var.set(rid)
    start = time.perf_counter()
    status: int | None = None
    error: str | None = None
    try:
        response = await handler(request)
        status = int(getattr(response, "status", 200) or 200)
        try:
            response.headers["X-Request-ID"] = rid
        except (AttributeError, TypeError, RuntimeError):
            pass
        return response
    except web.HTTPException as exc:
        status = int(getattr(exc, "status", 500) or 500)
        try:
            exc.headers["X-Request-ID"] = rid
        except (AttributeError, TypeError, KeyError) as exc2:
            logger.debug("Unable to attach X-Request-ID to HTTPException: %s", exc2)
        raise
    except Exception as exc:
        if _is_client_disconnect(exc):
            status = 499
            logger.debug("Client disconnected: %s %s", request.method, request.path)
            raise
        status = 500
        error = f"{exc.__class__.__name__}: {exc}"
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0
        request_id_var.reset(token)
        if _should_log(request.path, status=status, duration_ms=duration_ms):
            fields = build_request_log_fields(request, status=status, duration_ms=duration_ms)
            if error:
                fields["error"] = error
            level = logging.ERROR if (status or 0) >= 500 else logging.WARNING if (status or 0) >= 400 else logging.INFO
            log_structured(logger, level, "http_request", **fields)


def ensure_observability(app: web.Application) -> None:
    """Install the request-context middleware once per app."""
    if request_context_middleware not in app.middlewares:
        app.middlewares.append(request_context_middleware)

"""
Route registration.
Builds the route table from every handler module and installs it on an aiohttp app.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from aiohttp import web
from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.observability import ensure_observability
from pixishelf_backend.shared import get_logger

from .handlers import (
    register_health_routes,
    register_image_routes,
    register_scan_routes,
    register_settings_routes,
)

_APP_KEY_SECURITY_MIDDLEWARES_INSTALLED: web.AppKey[bool] = web.AppKey("_pixishelf_security_middlewares_installed", bool)
_APP_KEY_ROUTES_REGISTERED: web.AppKey[bool] = web.AppKey("_pixishelf_routes_registered", bool)

logger = get_logger(__name__)


@web.middleware
async def security_headers_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    """Apply strict security headers to API responses only."""
    response = await handler(request)

    try:
        path = request.path or ""
    except Exception:
        path = ""
    if not path.startswith(API_PREFIX):
        return response

    try:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Image responses set their own long-lived Cache-Control.
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate")
    except Exception:
        pass

    return response


def build_route_table() -> web.RouteTableDef:
    """Register all route handlers on a fresh RouteTableDef."""
    routes = web.RouteTableDef()
    register_health_routes(routes)
    register_settings_routes(routes)
    register_scan_routes(routes)
    register_image_routes(routes)
    return routes


def _log_registered(routes: web.RouteTableDef) -> None:
    logger.info("=" * 60)
    logger.info("Routes registered:")
    for item in routes:
        method = getattr(item, "method", "")
        path = getattr(item, "path", "")
        logger.info("  %s %s", method, path)
    logger.info("=" * 60)


def register_routes(app: web.Application) -> None:
    """Install middlewares and the route table on `app` (idempotent)."""
    ensure_observability(app)
    if not app.get(_APP_KEY_SECURITY_MIDDLEWARES_INSTALLED):
        app.middlewares.insert(0, security_headers_middleware)
        app[_APP_KEY_SECURITY_MIDDLEWARES_INSTALLED] = True

    if app.get(_APP_KEY_ROUTES_REGISTERED):
        logger.debug("register_routes(app) skipped: routes already registered on this app")
        return
    routes = build_route_table()
    app.add_routes(routes)
    app[_APP_KEY_ROUTES_REGISTERED] = True
    _log_registered(routes)

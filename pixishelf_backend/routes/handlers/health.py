"""
Health check endpoint.
"""
import asyncio

from aiohttp import web

from pixishelf_backend.config import API_PREFIX, DB_QUERY_TIMEOUT
from pixishelf_backend.shared import ErrorCode, Result, get_logger, sanitize_error_message

from ..core import _json_response, _require_services

logger = get_logger(__name__)


def register_health_routes(routes: web.RouteTableDef) -> None:
    """Register health routes."""

    @routes.get(f"{API_PREFIX}/health")
    async def health(request):
        """Database reachability, row counts and scan state."""
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)

        try:
            counts = await asyncio.wait_for(svc["store"].counts(), timeout=DB_QUERY_TIMEOUT)
        except asyncio.TimeoutError:
            counts = Result.Err(ErrorCode.TIMEOUT, "Row count query timed out")
        except Exception as exc:
            counts = Result.Err(ErrorCode.DB_ERROR, sanitize_error_message(exc, "Row count query failed"))

        if not counts.ok:
            logger.warning("Health check failed: %s", counts.error)
        scan_status = svc["scan"].status()
        return _json_response(
            Result.Ok(
                {
                    "database": {
                        "reachable": counts.ok,
                        "error": None if counts.ok else counts.error,
                    },
                    "counts": counts.data if counts.ok else None,
                    "scanning": scan_status["scanning"],
                    "state": scan_status["state"],
                }
            )
        )

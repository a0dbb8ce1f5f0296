"""
Settings endpoints (scan root).
"""
from aiohttp import web

from pixishelf_backend.config import API_PREFIX
from pixishelf_backend.shared import ErrorCode, Result

from ..core import _json_response, _read_json, _require_services


def register_settings_routes(routes: web.RouteTableDef) -> None:
    """Register settings routes."""

    @routes.get(f"{API_PREFIX}/settings/scan-path")
    async def get_scan_path(request):
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        settings = svc["settings"]
        scan_path = await settings.get_scan_path()
        last_scan = await settings.get_last_scan_time()
        return _json_response(Result.Ok({"scan_path": scan_path, "last_scan_time": last_scan}))

    @routes.post(f"{API_PREFIX}/settings/scan-path")
    async def set_scan_path(request):
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        body_res = await _read_json(request)
        if not body_res.ok:
            return _json_response(body_res)
        body = body_res.data or {}
        raw = body.get("scan_path", body.get("path"))
        if not isinstance(raw, str) or not raw.strip():
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Missing 'scan_path'"))
        if svc["scan"].is_running:
            return _json_response(Result.Err(ErrorCode.SCAN_IN_PROGRESS, "Cannot change the scan path while a scan is running"))
        saved = await svc["settings"].set_scan_path(raw)
        return _json_response(saved.map(lambda path: {"scan_path": path}))

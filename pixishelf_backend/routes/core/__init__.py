"""
Core utilities for route handlers.
"""
from .request_json import _read_json
from .response import _json_response, safe_error_message
from .services import (
    _build_services,
    _dispose_services,
    _require_services,
    configure_db_path,
    get_services_error,
    set_services,
)

__all__ = [
    "_json_response",
    "safe_error_message",
    "_read_json",
    "_require_services",
    "_build_services",
    "_dispose_services",
    "configure_db_path",
    "get_services_error",
    "set_services",
]

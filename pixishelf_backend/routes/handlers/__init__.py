"""
Route handlers, one module per area.
"""
from .health import register_health_routes
from .images import register_image_routes
from .scan import register_scan_routes
from .settings import register_settings_routes

__all__ = [
    "register_health_routes",
    "register_image_routes",
    "register_scan_routes",
    "register_settings_routes",
]

"""
HTTP routes for PixiShelf.
"""
from .registry import build_route_table, register_routes

__all__ = ["build_route_table", "register_routes"]

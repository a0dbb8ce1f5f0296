"""
Utility helpers shared across backend modules.
"""
from __future__ import annotations

import os
from typing import Any

BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "enabled"})
BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off", "disabled"})


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in BOOL_TRUE_VALUES:
            return True
        if normalized in BOOL_FALSE_VALUES:
            return False
    return default


def env_bool(name: str, default: bool) -> bool:
    if not name:
        return default
    try:
        raw = os.environ.get(name)
    except Exception:
        raw = None
    if raw is None:
        return default
    return parse_bool(raw, default)


def chunked(items: list[Any], size: int) -> list[list[Any]]:
    """Split `items` into consecutive lists of at most `size` elements."""
    step = max(1, int(size or 1))
    return [items[i:i + step] for i in range(0, len(items), step)]


def env_float(name: str, default: float) -> float:
    try:
        raw = os.environ.get(name)
    except Exception:
        raw = None
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default

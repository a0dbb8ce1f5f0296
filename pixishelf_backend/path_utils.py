"""
Shared path normalization and safety helpers.
"""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath


def normalize_path(value: str) -> Path | None:
    if not value:
        return None
    if "\x00" in value:
        return None
    try:
        return Path(value).expanduser().resolve(strict=False)
    except (OSError, ValueError):
        return None


def safe_rel_path(value: str) -> Path | None:
    """Validate a client-supplied relative path; None when it could escape its root."""
    if value is None:
        return Path("")
    raw = str(value).strip().replace("\\", "/").lstrip("/")
    if raw == "":
        return Path("")
    if "\x00" in raw:
        return None
    try:
        rel = Path(raw)
    except (OSError, ValueError):
        return None
    if getattr(rel, "drive", ""):
        return None
    if rel.is_absolute():
        return None
    if any(part == ".." for part in rel.parts):
        return None
    return rel


def is_within_root(candidate: Path, root: Path) -> bool:
    try:
        root_resolved = root.resolve(strict=True)
        cand_resolved = candidate.resolve(strict=True)
    except (OSError, RuntimeError, ValueError):
        return False
    try:
        return cand_resolved == root_resolved or cand_resolved.is_relative_to(root_resolved)
    except AttributeError:
        try:
            common = os.path.commonpath([str(cand_resolved), str(root_resolved)])
            return os.path.normcase(common) == os.path.normcase(str(root_resolved))
        except ValueError:
            return False


def to_stored_path(path: Path | str, root: Path | str) -> str:
    """
    Relative POSIX path of `path` under `root`, as written to `images.path`.

    Falls back to the absolute POSIX path when `path` is not under `root`.
    """
    p = Path(path)
    try:
        rel = p.relative_to(Path(root))
    except ValueError:
        return p.as_posix()
    return PurePosixPath(*rel.parts).as_posix()


def validate_directory(value: str | os.PathLike | None) -> Path | None:
    """Resolve `value` and return it only if it is an existing directory."""
    if value is None:
        return None
    resolved = normalize_path(str(value))
    if resolved is None:
        return None
    try:
        return resolved if resolved.is_dir() else None
    except OSError:
        return None

"""
Collect the media files that belong to one artwork directory.
"""
from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image

from ...shared import SUPPORTED_MEDIA_EXTENSIONS, ErrorCode, Result, classify_file, get_logger
from .models import MediaFile

logger = get_logger(__name__)

_PAGE_RE = re.compile(r"^(\d+)_p(\d+)\.[^.]+$", re.IGNORECASE)


def match_page_index(filename: str, artwork_id: str) -> int | None:
    """
    Page index encoded in `filename` for `artwork_id`, or None when the file
    does not belong to the artwork.

    `{id}.{ext}` is page 0; `{id}_p{n}.{ext}` is page n.
    """
    stem, ext = os.path.splitext(filename)
    if ext.lower() not in SUPPORTED_MEDIA_EXTENSIONS:
        return None
    if stem == artwork_id:
        return 0
    match = _PAGE_RE.match(filename)
    if not match or match.group(1) != artwork_id:
        return None
    try:
        return int(match.group(2))
    except ValueError:
        return None


def probe_dimensions(path: str) -> tuple[int | None, int | None]:
    """Width/height of a raster image via Pillow; (None, None) on any failure."""
    if classify_file(path) != "image":
        return None, None
    try:
        with Image.open(path) as img:
            width, height = img.size
        return int(width), int(height)
    except Exception as exc:
        logger.debug("Dimension probe failed for %s: %s", path, exc)
        return None, None


def collect(directory: str | Path, artwork_id: str, *, probe: bool = False) -> Result[list[MediaFile]]:
    """
    List the media files for `artwork_id` inside `directory`.

    Blocking (directory listing, stat, optional Pillow probe); callers run it
    in a worker thread. An empty list is a valid result.
    """
    chosen: dict[int, tuple[bool, str, os.DirEntry]] = {}
    try:
        with os.scandir(directory) as it:
            for entry in it:
                try:
                    if not entry.is_file():
                        continue
                except OSError:
                    continue
                page = match_page_index(entry.name, artwork_id)
                if page is None:
                    continue
                # `{id}_p0` outranks a bare `{id}`; otherwise the first name wins.
                rank = (os.path.splitext(entry.name)[0] == artwork_id, entry.name)
                current = chosen.get(page)
                if current is None or rank < current[:2]:
                    chosen[page] = (rank[0], rank[1], entry)
    except FileNotFoundError:
        return Result.Err(ErrorCode.IO_ERROR, "Artwork directory not found", directory=str(directory))
    except OSError as exc:
        return Result.Err(ErrorCode.IO_ERROR, f"Cannot list artwork directory: {exc}", directory=str(directory))

    media: list[MediaFile] = []
    for page in sorted(chosen):
        entry = chosen[page][2]
        try:
            size = int(entry.stat().st_size)
        except OSError as exc:
            logger.debug("Skipping unreadable media %s: %s", entry.path, exc)
            continue
        width, height = probe_dimensions(entry.path) if probe else (None, None)
        media.append(
            MediaFile(
                path=os.path.abspath(entry.path),
                size=size,
                page_index=page,
                width=width,
                height=height,
            )
        )
    return Result.Ok(media)


def directory_created_at(directory: str | Path) -> Result[datetime]:
    """Creation time of an artwork directory; mtime where the platform has no birthtime."""
    try:
        st = os.stat(directory)
    except OSError as exc:
        return Result.Err(ErrorCode.IO_ERROR, f"Cannot stat artwork directory: {exc}", directory=str(directory))
    stamp = getattr(st, "st_birthtime", None) or st.st_mtime
    return Result.Ok(datetime.fromtimestamp(stamp, tz=timezone.utc))

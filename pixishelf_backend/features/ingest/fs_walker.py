"""
MetadataWalker: finds `{id}-meta.txt` files under a scan root.

Runs in a worker thread; the scan loop awaits the finished listing.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from ...config import SCAN_MAX_DEPTH
from ...shared import ErrorCode, Result, get_logger
from .models import DiscoveredArtwork

logger = get_logger(__name__)

METADATA_FILE_RE = re.compile(r"^(\d+)-meta\.txt$", re.IGNORECASE)


def match_metadata_file(filename: str) -> str | None:
    """External id encoded in a metadata filename, or None."""
    match = METADATA_FILE_RE.match(filename or "")
    return match.group(1) if match else None


@dataclass
class Discovery:
    """Metadata files found under a root, first occurrence of each id kept."""

    artworks: list[DiscoveredArtwork] = field(default_factory=list)
    duplicates: list[DiscoveredArtwork] = field(default_factory=list)
    unreadable_dirs: list[str] = field(default_factory=list)

    @property
    def external_ids(self) -> list[str]:
        return [a.external_id for a in self.artworks]


class MetadataWalker:
    """
    Depth-bounded iterative walk. Hidden directories and symlinked directories
    are not entered.
    """

    def __init__(self, max_depth: int = SCAN_MAX_DEPTH) -> None:
        self._max_depth = max(0, int(max_depth))
        self.unreadable: list[str] = []

    def iter_metadata_files(self, root: Path):
        """
        Yield `(external_id, path)` for every metadata file under `root`.

        Unreadable subdirectories are recorded on `self.unreadable` and skipped.
        """
        self.unreadable = []
        stack: list[tuple[Path, int]] = [(root, 0)]
        while stack:
            current, depth = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as exc:
                if current == root:
                    raise
                logger.debug("Skipping unreadable directory %s: %s", current, exc)
                self.unreadable.append(str(current))
                continue
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if depth < self._max_depth and not entry.name.startswith("."):
                            stack.append((Path(entry.path), depth + 1))
                        continue
                    if not entry.is_file():
                        continue
                except OSError:
                    continue
                external_id = match_metadata_file(entry.name)
                if external_id is not None:
                    yield external_id, entry.path

    def discover(self, root: str | Path) -> Result[Discovery]:
        """
        List metadata files under `root` in lexicographic path order.

        A second file claiming an already-seen external id lands in
        `duplicates`. A missing or unreadable root is an error.
        """
        root_path = Path(root)
        try:
            if not root_path.exists():
                return Result.Err(ErrorCode.NOT_FOUND, f"Scan root does not exist: {root}")
            if not root_path.is_dir():
                return Result.Err(ErrorCode.INVALID_INPUT, f"Scan root is not a directory: {root}")
            found = sorted(self.iter_metadata_files(root_path), key=lambda item: item[1])
        except OSError as exc:
            return Result.Err(ErrorCode.IO_ERROR, f"Scan root is not readable: {exc}")

        discovery = Discovery(unreadable_dirs=list(self.unreadable))
        seen: set[str] = set()
        for external_id, path in found:
            item = DiscoveredArtwork(
                external_id=external_id,
                metadata_path=os.path.abspath(path),
                directory=os.path.abspath(os.path.dirname(path)),
            )
            if external_id in seen:
                discovery.duplicates.append(item)
                continue
            seen.add(external_id)
            discovery.artworks.append(item)
        return Result.Ok(discovery)

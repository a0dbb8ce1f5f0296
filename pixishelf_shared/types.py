"""
Shared types, enums, and constants.
"""
import os
from enum import Enum
from typing import Final, Literal

MediaKind = Literal["image", "video", "unknown"]


class ErrorCode(str, Enum):
    """Standardized error codes (string enum)."""

    # Client / validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_JSON = "INVALID_JSON"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"

    # Service availability
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SCAN_IN_PROGRESS = "SCAN_IN_PROGRESS"

    # Server / infrastructure
    DB_ERROR = "DB_ERROR"
    TIMEOUT = "TIMEOUT"
    IO_ERROR = "IO_ERROR"

    # Ingestion
    PARSE_ERROR = "PARSE_ERROR"
    CANCELLED = "CANCELLED"
    SCAN_FAILED = "SCAN_FAILED"


# Media extensions accepted next to a metadata file.
EXTENSIONS: Final[dict[MediaKind, frozenset[str]]] = {
    "image": frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".tif"}),
    "video": frozenset({".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv", ".webm"}),
    "unknown": frozenset(),
}

SUPPORTED_MEDIA_EXTENSIONS: Final[frozenset[str]] = EXTENSIONS["image"] | EXTENSIONS["video"]


def classify_file(filename: str) -> MediaKind:
    """
    Classify file by extension.

    Args:
        filename: File name or path

    Returns:
        Media kind (image, video, unknown)
    """
    ext = os.path.splitext(filename)[1].lower()

    for kind, exts in EXTENSIONS.items():
        if ext in exts:
            return kind

    return "unknown"

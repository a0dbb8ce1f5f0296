"""
Parser for per-artwork metadata files (`{id}-meta.txt`).

File layout: a key on its own line followed by one or more value lines; a
blank line (or EOF) ends the value, so a key is only recognised at the start
of the file or after a blank line. Keys are case-insensitive; unknown keys are
skipped with their values.
"""
from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from ...shared import ErrorCode, Result
from .models import MetadataRecord

KNOWN_KEYS: frozenset[str] = frozenset(
    {
        "ID",
        "USER",
        "USERID",
        "TITLE",
        "DESCRIPTION",
        "TAGS",
        "URL",
        "ORIGINAL",
        "THUMBNAIL",
        "XRESTRICT",
        "AI",
        "SIZE",
        "BOOKMARK",
        "DATE",
    }
)

# Field name used in validation messages, per key.
FIELD_LABELS: dict[str, str] = {
    "ID": "ID",
    "USER": "User",
    "USERID": "UserID",
    "TITLE": "Title",
    "URL": "URL",
    "ORIGINAL": "Original",
    "THUMBNAIL": "Thumbnail",
}

_FLAG_VALUES: dict[str, bool] = {"yes": True, "true": True, "1": True, "no": False, "false": False, "0": False}

_DIGITS_RE = re.compile(r"^\d+$")
_INT_RE = re.compile(r"^[+-]?\d+")

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%Y年%m月%d日 %H:%M",
    "%Y年%m月%d日",
    "%a %b %d %Y %H:%M:%S",
    "%d %b %Y",
    "%b %d, %Y",
)


def _split_blocks(raw_text: str) -> dict[str, str]:
    """Group lines into `{KEY: value}`; the first occurrence of a key wins."""
    blocks: dict[str, str] = {}
    current_key: str | None = None
    current_lines: list[str] = []

    def _close() -> None:
        if current_key and current_key in KNOWN_KEYS and current_lines and current_key not in blocks:
            blocks[current_key] = "\n".join(current_lines)

    for line in raw_text.splitlines():
        stripped = line.strip()
        if not stripped:
            _close()
            current_key, current_lines = None, []
            continue
        if current_key is None:
            # Unknown keys are kept here too; _close drops them with their values.
            current_key, current_lines = stripped.upper(), []
            continue
        current_lines.append(stripped)
    _close()
    return blocks


def parse_tags(value: str) -> tuple[str, ...]:
    """Split a Tags value into names, stripping `- ` and `#` markers."""
    tags: list[str] = []
    seen: set[str] = set()
    for line in value.splitlines():
        line = line.strip()
        if line.startswith("- "):
            line = line[2:]
        for token in line.split():
            if token.startswith("#"):
                token = token[1:]
            token = token.strip()
            if not token or token == "-" or token in seen:
                continue
            seen.add(token)
            tags.append(token)
    return tuple(tags)


def parse_int(value: str | None) -> int | None:
    if not value:
        return None
    match = _INT_RE.match(value.strip().replace(",", ""))
    if not match:
        return None
    number = int(match.group(0))
    return number if number >= 0 else None


def parse_flag(value: str | None) -> bool | None:
    """yes/true/1 and no/false/0, case-insensitive; anything else is None."""
    if not value:
        return None
    return _FLAG_VALUES.get(value.strip().lower())


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and " " not in value


def _optional(blocks: dict[str, str], key: str) -> str | None:
    value = blocks.get(key)
    return value.strip() if value and value.strip() else None


def _validate(blocks: dict[str, str]) -> list[str]:
    invalid: list[str] = []
    for key in ("ID", "USER", "USERID", "TITLE"):
        if not (blocks.get(key) or "").strip():
            invalid.append(FIELD_LABELS[key])
    for key in ("ID", "USERID"):
        value = (blocks.get(key) or "").strip()
        if value and not _DIGITS_RE.match(value):
            invalid.append(FIELD_LABELS[key])
    for key in ("URL", "ORIGINAL", "THUMBNAIL"):
        value = _optional(blocks, key)
        if value and not is_valid_url(value):
            invalid.append(FIELD_LABELS[key])
    return invalid


def parse(raw_text: str) -> Result[MetadataRecord]:
    """
    Parse metadata text into a MetadataRecord.

    Returns:
        Result.Ok(record), or Result.Err(PARSE_ERROR, ..., fields=[...]) naming
        every missing or invalid field.
    """
    if not isinstance(raw_text, str):
        return Result.Err(ErrorCode.PARSE_ERROR, "Metadata content must be text", fields=[])
    blocks = _split_blocks(raw_text.lstrip("\ufeff"))

    invalid = _validate(blocks)
    if invalid:
        return Result.Err(
            ErrorCode.PARSE_ERROR,
            f"Missing or invalid fields: {', '.join(invalid)}",
            fields=invalid,
        )

    record = MetadataRecord(
        external_id=blocks["ID"].strip(),
        title=blocks["TITLE"].strip(),
        author_name=blocks["USER"].strip(),
        author_id=blocks["USERID"].strip(),
        description=(blocks.get("DESCRIPTION") or "").strip(),
        tags=parse_tags(blocks.get("TAGS") or ""),
        source_url=_optional(blocks, "URL"),
        original_url=_optional(blocks, "ORIGINAL"),
        thumbnail_url=_optional(blocks, "THUMBNAIL"),
        x_restrict=_optional(blocks, "XRESTRICT"),
        is_ai_generated=parse_flag(blocks.get("AI")),
        size=_optional(blocks, "SIZE"),
        bookmark_count=parse_int(blocks.get("BOOKMARK")),
        source_date=parse_date(blocks.get("DATE")),
    )
    return Result.Ok(record)


def read_text(path: str | Path) -> str:
    """Read a metadata file as UTF-8, tolerating a BOM and bad bytes."""
    return Path(path).read_text(encoding="utf-8-sig", errors="replace")


def parse_file(path: str | Path) -> Result[MetadataRecord]:
    """Read and parse one metadata file. Blocking; run it in a worker thread."""
    try:
        raw = read_text(path)
    except FileNotFoundError:
        return Result.Err(ErrorCode.PARSE_ERROR, "Metadata file not found", path=str(path))
    except OSError as exc:
        return Result.Err(ErrorCode.PARSE_ERROR, f"Failed to read metadata file: {exc}", path=str(path))
    result = parse(raw)
    if not result.ok:
        meta: dict[str, Any] = dict(result.meta)
        meta["path"] = str(path)
        return Result.Err(ErrorCode.PARSE_ERROR, result.error or "Invalid metadata", **meta)
    return result

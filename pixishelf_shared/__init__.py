"""Shared utilities for PixiShelf."""
from .errors import sanitize_error_message
from .log import get_logger, log_scan_event, log_structured, log_success, request_id_var
from .result import Result
from .time import elapsed_ms, format_timestamp, ms, now, timer
from .types import EXTENSIONS, SUPPORTED_MEDIA_EXTENSIONS, ErrorCode, MediaKind, classify_file

__all__ = [
    "Result",
    "get_logger",
    "log_success",
    "log_structured",
    "log_scan_event",
    "request_id_var",
    "now",
    "ms",
    "elapsed_ms",
    "format_timestamp",
    "timer",
    "MediaKind",
    "ErrorCode",
    "EXTENSIONS",
    "SUPPORTED_MEDIA_EXTENSIONS",
    "classify_file",
    "sanitize_error_message",
]

"""Backend-facing alias for shared utilities."""

from __future__ import annotations

import pixishelf_shared as _root_shared

Result = _root_shared.Result
ErrorCode = _root_shared.ErrorCode
get_logger = _root_shared.get_logger
log_success = _root_shared.log_success
log_structured = _root_shared.log_structured
log_scan_event = _root_shared.log_scan_event
request_id_var = _root_shared.request_id_var
classify_file = _root_shared.classify_file
sanitize_error_message = _root_shared.sanitize_error_message
elapsed_ms = _root_shared.elapsed_ms
ms = _root_shared.ms
format_timestamp = _root_shared.format_timestamp
timer = _root_shared.timer
MediaKind = _root_shared.MediaKind
EXTENSIONS = _root_shared.EXTENSIONS
SUPPORTED_MEDIA_EXTENSIONS = _root_shared.SUPPORTED_MEDIA_EXTENSIONS

__all__ = list(_root_shared.__all__)

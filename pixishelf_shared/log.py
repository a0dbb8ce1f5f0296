"""
Logging utilities with consistent formatting and emoji indicators.
"""
import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Final

EMOJI_MAP: Final[dict[str, str]] = {
    "DEBUG": "\U0001F50D",
    "INFO": "ℹ️",
    "WARNING": "⚠️",
    "ERROR": "❌",
    "CRITICAL": "\U0001F525",
    "SUCCESS": "✅",
}

PREFIX: Final[str] = "\U0001F4DA PixiShelf"
LOGGER_NAMESPACE: Final[str] = "pixishelf"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class CorrelationFilter(logging.Filter):
    """Inject `request_id` from `request_id_var` into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.request_id = request_id_var.get("")
        except Exception:
            record.request_id = ""
        return True


class EmojiFormatter(logging.Formatter):
    """Formatter that adds the project prefix and a level emoji."""

    def format(self, record: logging.LogRecord) -> str:
        emoji = EMOJI_MAP.get(record.levelname, "\U0001F4DA")

        # Format: <prefix> [<emoji>] module [request-id]: message
        try:
            rid = str(getattr(record, "request_id", "") or "").strip()
        except Exception:
            rid = ""
        rid_part = f" [{rid}]" if rid else ""
        log_format = f"{PREFIX} [{emoji}] %(name)s{rid_part}: %(message)s"
        formatter = logging.Formatter(log_format)
        return formatter.format(record)


def _has_correlation_filter(logger: logging.Logger) -> bool:
    try:
        return any(isinstance(f, CorrelationFilter) for f in list(logger.filters or []))
    except Exception:
        return False


def _ensure_correlation_filter(logger: logging.Logger) -> None:
    if _has_correlation_filter(logger):
        return
    try:
        logger.addFilter(CorrelationFilter())
    except Exception:
        pass


def _short_name(name: str) -> str:
    if name.startswith("__main__"):
        return "main"
    if "." in name:
        parts = name.split(".")
        for anchor in ("features", "adapters", "routes"):
            if anchor in parts:
                return ".".join(parts[parts.index(anchor):])
        return ".".join(parts[1:]) or name
    return name


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Get a logger with the PixiShelf prefix and emoji indicators.

    Args:
        name: Logger name (usually __name__)
        level: Optional logging level

    Returns:
        Configured logger instance under the `pixishelf.` namespace
    """
    logger = logging.getLogger(f"{LOGGER_NAMESPACE}.{_short_name(name)}")
    _ensure_correlation_filter(logger)

    if level is not None:
        logger.setLevel(level)
    elif not logger.handlers:
        logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(EmojiFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    return logger


SUCCESS_LEVEL: Final[int] = 25  # Between INFO (20) and WARNING (30)
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def log_success(logger: logging.Logger, message: str) -> None:
    """Log a message at the SUCCESS level."""
    logger.log(SUCCESS_LEVEL, message)


def log_structured(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """Emit a structured JSON log entry with contextual fields."""
    payload = {
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "context": context,
    }
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_scan_event(logger: logging.Logger, level: int, msg: str, **context: Any) -> None:
    """
    Log a scan lifecycle event with `key=value` context appended.

    Never raises; logging must not break a scan.
    """
    try:
        if context:
            ctx = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
            msg = f"{msg} ({ctx})" if ctx else msg
        logger.log(level, msg)
    except Exception:
        pass

"""
Result pattern for error handling without exceptions.

Adapters and services return Result[T] so that failures travel as values up to
the scan summary or the HTTP layer instead of surfacing as 500s.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, cast

from .types import ErrorCode

T = TypeVar("T")
U = TypeVar("U")


@dataclass
class Result(Generic[T]):
    """
    Result pattern for safe error handling.

    Usage:
        def read_metadata(path: str) -> Result[str]:
            if not os.path.isfile(path):
                return Result.Err(ErrorCode.NOT_FOUND, f"Metadata file not found: {path}")
            return Result.Ok(Path(path).read_text(encoding="utf-8"))
    """
    ok: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: str = "OK"
    meta: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def Ok(data: T, **meta: Any) -> "Result[T]":
        """Create a successful result with data and optional metadata."""
        return Result(ok=True, data=data, code="OK", meta=meta)

    @staticmethod
    def Err(code: ErrorCode | str | Enum, error: str, **meta: Any) -> "Result[T]":
        """Create an error result with code, message, and optional metadata."""
        try:
            code_value = code.value if isinstance(code, Enum) else code
        except Exception:
            code_value = code
        return Result(ok=False, error=error, code=str(code_value), meta=meta)

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        """Map the data if ok, otherwise return self."""
        if self.ok and self.data is not None:
            return Result.Ok(fn(self.data), **self.meta)
        return cast(Result[U], self)

    def unwrap(self) -> T:
        """Get data or raise ValueError if error."""
        if self.ok and self.data is not None:
            return self.data
        raise ValueError(f"[{self.code}] {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Get data or return default if error."""
        return self.data if (self.ok and self.data is not None) else default

    def to_dict(self) -> dict[str, Any]:
        """Wire shape shared by JSON responses and SSE payloads."""
        return {
            "ok": self.ok,
            "data": self.data,
            "error": self.error,
            "code": self.code,
            "meta": self.meta,
        }

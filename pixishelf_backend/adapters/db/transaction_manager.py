"""
Transaction and SQL utility helpers used by the Sqlite facade.
"""
import re
from typing import Any

from ...shared import Result

# Allow bare column names and qualified table.column identifiers.
_COLUMN_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$")
_IN_QUERY_FORBIDDEN = re.compile(
    r"(--|/\*|\*/|;|\bpragma\b|\battach\b|\bdetach\b|\bvacuum\b|\balter\b|\bdrop\b|\binsert\b|\bupdate\b|\bdelete\b)",
    re.IGNORECASE,
)


def tx_token(ctx_var: Any) -> str | None:
    try:
        ctx_tok = ctx_var.get()
    except Exception:
        ctx_tok = None
    return str(ctx_tok) if ctx_tok else None


def rows_to_dicts(rows: Any) -> list[dict[str, Any]]:
    if not rows:
        return []
    return [dict(r) for r in rows]


def _statement_head(query: str) -> str:
    q = str(query or "").lstrip()
    if not q:
        return ""
    return q.split(None, 1)[0].upper()


def is_write_sql(query: str) -> bool:
    head = _statement_head(query)
    if not head:
        return False
    return head not in ("SELECT", "PRAGMA", "WITH", "EXPLAIN")


def begin_stmt_for_mode(mode: str) -> str:
    mode_l = str(mode or "").strip().lower()
    if mode_l in ("immediate", "write"):
        return "BEGIN IMMEDIATE"
    if mode_l in ("exclusive",):
        return "BEGIN EXCLUSIVE"
    return "BEGIN"


def cursor_write_result(cursor: Any, query: str) -> Result[Any]:
    """
    Result for a write statement.

    INSERT/REPLACE report `lastrowid` when a row was written; every other
    statement reports `rowcount`. A pooled connection keeps its last insert id
    across statements, so it is never used for UPDATE/DELETE.
    """
    rowcount = getattr(cursor, "rowcount", None)
    if _statement_head(query) in ("INSERT", "REPLACE"):
        last_id = getattr(cursor, "lastrowid", None)
        if last_id and rowcount:
            return Result.Ok(last_id)
    return Result.Ok(rowcount if rowcount is not None and rowcount >= 0 else 0)


def is_locked_error(exc: Exception) -> bool:
    try:
        msg = str(exc).lower()
    except Exception:
        return False
    return "database is locked" in msg or "database table is locked" in msg or "busy" in msg


def validate_column_name(column: str) -> bool:
    if not column or not isinstance(column, str):
        return False
    return bool(_COLUMN_NAME_PATTERN.match(column.strip()))


def validate_in_base_query(base_query: str) -> tuple[bool, str]:
    try:
        q = str(base_query or "").strip()
    except Exception:
        return False, "base_query must be a string"
    if not q:
        return False, "base_query is empty"
    if q.count("{IN_CLAUSE}") != 1:
        return False, "base_query must contain exactly one {IN_CLAUSE}"
    if not re.match(r"^(select|with)\b", q.lower().lstrip()):
        return False, "base_query must be a SELECT query"
    if _IN_QUERY_FORBIDDEN.search(q):
        return False, "base_query contains forbidden SQL tokens"
    return True, ""


def build_in_query(base_query: str, safe_column: str, value_count: int) -> tuple[bool, str]:
    try:
        n = int(value_count)
    except Exception:
        n = 0
    if n <= 0:
        return True, ""
    parts = str(base_query).split("{IN_CLAUSE}")
    if len(parts) != 2:
        return False, "base_query must contain exactly one {IN_CLAUSE}"
    placeholders = ",".join(["?"] * n)
    query = parts[0] + f"{safe_column} IN ({placeholders})" + parts[1]
    return True, query

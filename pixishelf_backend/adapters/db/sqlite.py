"""
SQLite database connection manager.

This adapter uses `aiosqlite` on the caller's event loop with a small
connection pool. Writes are serialized by an asyncio write lock; transactions
bind a pooled connection to the current task through a context variable so
nested `aexecute` calls join the open transaction.

Critical guarantee:
- The adapter never raises to callers; it returns `Result(...)`. Only
  `atransaction` re-raises exceptions thrown by its body (after rollback).
"""

from __future__ import annotations

import asyncio
import contextvars
import random
import sqlite3
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from queue import Empty, Queue
from typing import Any

import aiosqlite

from ...config import DB_MAX_CONNECTIONS, DB_QUERY_TIMEOUT, DB_TIMEOUT
from ...shared import ErrorCode, Result, get_logger
from .transaction_manager import (
    begin_stmt_for_mode as tx_begin_stmt_for_mode,
    build_in_query as tx_build_in_query,
    cursor_write_result as tx_cursor_write_result,
    is_locked_error as tx_is_locked_error,
    is_write_sql as tx_is_write_sql,
    rows_to_dicts as tx_rows_to_dicts,
    tx_token as tx_ctx_token,
    validate_column_name as tx_validate_column_name,
    validate_in_base_query as tx_validate_in_base_query,
)

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_MS = max(1000, int(float(DB_TIMEOUT) * 1000))
# Negative cache_size is in KiB. -32000 ~= 32 MiB cache.
SQLITE_CACHE_SIZE_KIB = -32000

_TX_TOKEN: contextvars.ContextVar[str | None] = contextvars.ContextVar("pixishelf_db_tx_token", default=None)


class Sqlite:
    """
    Connection pool manager for SQLite (aiosqlite-backed).
    """

    def __init__(
        self,
        db_path: str,
        max_connections: int | None = None,
        timeout: float = DB_TIMEOUT,
        query_timeout: float | None = None,
    ):
        self.db_path = Path(db_path)
        max_conn = int(max_connections) if max_connections is not None else int(DB_MAX_CONNECTIONS or 4)
        self._max_conn_limit = max(1, max_conn)
        self._pool: Queue[aiosqlite.Connection] = Queue(maxsize=self._max_conn_limit)
        self._async_sem: asyncio.Semaphore | None = None
        self._write_lock: asyncio.Lock | None = None
        self._initialized = False
        self._closed = False

        self._timeout = float(timeout)
        self._query_timeout = float(query_timeout if query_timeout is not None else (DB_QUERY_TIMEOUT or 0.0))
        self._lock_retry_attempts = 6
        self._lock_retry_base_seconds = 0.05
        self._lock_retry_max_seconds = 0.75

        # Open transactions keyed by token; all holders of a token hold the write lock.
        self._tx_conns: dict[str, aiosqlite.Connection] = {}
        self._active_conns: set[aiosqlite.Connection] = set()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    async def _sleep_backoff(self, attempt: int):
        base = float(self._lock_retry_base_seconds)
        max_s = float(self._lock_retry_max_seconds)
        delay = min(max_s, base * (2 ** max(0, attempt)))
        delay = delay + (random.random() * 0.03)
        logger.debug("DB lock backoff: attempt=%d delay=%.3fs", int(attempt), float(delay))
        await asyncio.sleep(delay)

    async def _apply_connection_pragmas(self, conn: aiosqlite.Connection):
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute(f"PRAGMA cache_size={SQLITE_CACHE_SIZE_KIB}")
        await conn.execute("PRAGMA temp_store=MEMORY")
        await conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        await conn.execute("PRAGMA foreign_keys=ON")

    async def _create_connection(self) -> aiosqlite.Connection:
        # Autocommit mode; transactions are managed explicitly (BEGIN/COMMIT).
        conn = await aiosqlite.connect(str(self.db_path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        await self._apply_connection_pragmas(conn)
        return conn

    async def _acquire_connection_async(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError("Database is closed - connection rejected")
        if self._async_sem is None:
            self._async_sem = asyncio.Semaphore(self._max_conn_limit)
        sem = self._async_sem
        await sem.acquire()
        try:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                conn = await self._create_connection()
            self._active_conns.add(conn)
            return conn
        except BaseException:
            sem.release()
            raise

    async def _release_connection_async(self, conn: aiosqlite.Connection):
        try:
            self._active_conns.discard(conn)
            if self._closed or self._pool.full():
                try:
                    await conn.close()
                except Exception:
                    pass
            else:
                self._pool.put_nowait(conn)
        finally:
            if self._async_sem:
                self._async_sem.release()

    async def _ensure_initialized_async(self):
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        if self._initialized:
            return
        conn = await self._acquire_connection_async()
        try:
            await conn.commit()
        finally:
            await self._release_connection_async(conn)
        self._initialized = True

    def _tx_token(self) -> str | None:
        return tx_ctx_token(_TX_TOKEN)

    async def _with_query_timeout(self, coro):
        timeout = float(self._query_timeout or 0)
        if timeout > 0:
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                return Result.Err(ErrorCode.TIMEOUT, "Database operation timed out")
        return await coro

    async def _retry_locked(self, op):
        for attempt in range(self._lock_retry_attempts + 1):
            try:
                return await op()
            except sqlite3.OperationalError as exc:
                if tx_is_locked_error(exc) and attempt < self._lock_retry_attempts:
                    await self._sleep_backoff(attempt)
                    continue
                raise
        return Result.Err(ErrorCode.DB_ERROR, "Query failed after retries")

    async def _run_on_conn(self, conn: aiosqlite.Connection, query: str, op, *, in_tx: bool) -> Result[Any]:
        async def _execute_inner() -> Result[Any]:
            try:
                lock = self._write_lock
                # A transaction already owns the write lock.
                if tx_is_write_sql(query) and lock is not None and not in_tx:
                    async with lock:
                        return await self._retry_locked(op)
                return await self._retry_locked(op)
            except sqlite3.IntegrityError as exc:
                logger.debug("Integrity error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, f"Integrity error: {exc}", integrity=True)
            except sqlite3.OperationalError as exc:
                if "interrupted" in str(exc).lower():
                    return Result.Err(ErrorCode.TIMEOUT, "Database operation interrupted (query timeout)")
                logger.error("Operational error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, f"Operational error: {exc}")
            except sqlite3.DatabaseError as exc:
                logger.error("Database error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            except Exception as exc:
                logger.error("Unexpected database error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, str(exc))

        return await self._with_query_timeout(_execute_inner())

    async def _with_connection(self, query: str, make_op) -> Result[Any]:
        """Run `make_op(conn)` on the transaction connection or a pooled one."""
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, f"Database unavailable: {exc}")

        token = self._tx_token()
        if token:
            conn = self._tx_conns.get(token)
            if not conn:
                return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
            return await self._run_on_conn(conn, query, make_op(conn), in_tx=True)

        try:
            conn = await self._acquire_connection_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, f"Database unavailable: {exc}")
        try:
            return await self._run_on_conn(conn, query, make_op(conn), in_tx=False)
        finally:
            await self._release_connection_async(conn)

    async def aexecute(self, query: str, params: tuple | None = None, fetch: bool = False) -> Result[Any]:
        """Execute one statement. `fetch=True` returns rows as dicts."""

        def _make(conn: aiosqlite.Connection):
            async def _op() -> Result[Any]:
                cursor = await conn.execute(query, params or ())
                try:
                    if fetch:
                        rows = await cursor.fetchall()
                        return Result.Ok(tx_rows_to_dicts(rows))
                    return tx_cursor_write_result(cursor, query)
                finally:
                    await cursor.close()
            return _op

        return await self._with_connection(query, _make)

    async def aquery(self, sql: str, params: tuple | None = None) -> Result[list[dict[str, Any]]]:
        """Execute a SELECT query and return rows."""
        return await self.aexecute(sql, params, fetch=True)

    async def aquery_in(
        self,
        base_query: str,
        column: str,
        values: list[Any],
        additional_params: tuple | None = None,
    ) -> Result[list[dict[str, Any]]]:
        """
        Run `base_query` with its `{IN_CLAUSE}` placeholder expanded to
        `column IN (?, ...)` over `values`.
        """
        if not values:
            return Result.Ok([])
        if not isinstance(values, (list, tuple)):
            return Result.Err(ErrorCode.INVALID_INPUT, "values must be a list or tuple")
        if not tx_validate_column_name(column):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid column name: {column}")
        ok_tpl, why = tx_validate_in_base_query(base_query)
        if not ok_tpl:
            return Result.Err(ErrorCode.INVALID_INPUT, why or "Invalid base_query template")
        ok_q, query_or_err = tx_build_in_query(str(base_query), column.strip(), len(values))
        if not ok_q:
            return Result.Err(ErrorCode.INVALID_INPUT, str(query_or_err))
        params = tuple(values)
        if additional_params:
            params = params + tuple(additional_params)
        return await self.aquery(query_or_err, params)

    async def aexecutemany(self, query: str, params_list: list[tuple]) -> Result[int]:
        """Execute a statement over many parameter tuples; returns the changed row count."""
        if not params_list:
            return Result.Ok(0)

        def _make(conn: aiosqlite.Connection):
            async def _op() -> Result[int]:
                cursor = await conn.executemany(query, params_list)
                try:
                    rowcount = getattr(cursor, "rowcount", None)
                    return Result.Ok(int(rowcount or 0) if (rowcount or 0) > 0 else 0)
                finally:
                    await cursor.close()
            return _op

        return await self._with_connection(query, _make)

    async def aexecutescript(self, script: str) -> Result[bool]:
        """Execute a multi-statement SQL script."""

        def _make(conn: aiosqlite.Connection):
            async def _op() -> Result[bool]:
                await conn.executescript(script)
                return Result.Ok(True)
            return _op

        # Scripts always take the write lock.
        return await self._with_connection("SCRIPT", _make)

    async def ahas_table(self, table_name: str) -> bool:
        """Return True if `table_name` exists in sqlite_master."""
        result = await self.aquery(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        )
        return bool(result.ok and result.data)

    async def aget_schema_version(self) -> int:
        """Get the schema version from the `metadata` table (0 if missing)."""
        if not await self.ahas_table("metadata"):
            return 0
        result = await self.aquery("SELECT value FROM metadata WHERE key = 'schema_version'")
        if result.ok and result.data:
            try:
                return int(result.data[0]["value"])
            except (ValueError, KeyError, TypeError):
                logger.warning("Invalid schema_version value in database")
                return 0
        return 0

    async def aset_schema_version(self, version: int) -> Result[Any]:
        """Set the schema version in the `metadata` table."""
        return await self.aexecute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_version', ?)",
            (str(version),),
        )

    async def _begin_tx_with_retry(self, conn: aiosqlite.Connection, begin_stmt: str) -> None:
        for attempt in range(self._lock_retry_attempts + 1):
            try:
                await conn.execute(begin_stmt)
                return
            except sqlite3.OperationalError as exc:
                if tx_is_locked_error(exc) and attempt < self._lock_retry_attempts:
                    await self._sleep_backoff(attempt)
                    continue
                raise

    async def _commit_with_retry(self, conn: aiosqlite.Connection) -> None:
        for attempt in range(self._lock_retry_attempts + 1):
            try:
                await conn.commit()
                return
            except sqlite3.OperationalError as exc:
                if tx_is_locked_error(exc) and attempt < self._lock_retry_attempts:
                    await self._sleep_backoff(attempt)
                    continue
                raise

    async def _begin_tx_async(self, mode: str) -> Result[str]:
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, f"Database unavailable: {exc}")
        lock = self._write_lock
        assert lock is not None
        await lock.acquire()
        try:
            conn = await self._acquire_connection_async()
        except BaseException as exc:
            lock.release()
            if isinstance(exc, Exception):
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            raise
        token = f"tx_{uuid.uuid4().hex}"
        try:
            await self._begin_tx_with_retry(conn, tx_begin_stmt_for_mode(mode))
        except BaseException as exc:
            try:
                await conn.rollback()
            except Exception:
                pass
            await self._release_connection_async(conn)
            lock.release()
            if isinstance(exc, Exception):
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            raise
        self._tx_conns[token] = conn
        return Result.Ok(token)

    async def _end_tx_async(self, token: str, *, commit: bool) -> Result[bool]:
        conn = self._tx_conns.get(token)
        if not conn:
            return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
        try:
            if commit:
                await self._commit_with_retry(conn)
            else:
                await conn.rollback()
            return Result.Ok(True)
        except Exception as exc:
            # Never hand a connection with an open transaction back to the pool.
            try:
                await conn.rollback()
            except Exception:
                pass
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        finally:
            self._tx_conns.pop(token, None)
            await self._release_connection_async(conn)
            if self._write_lock is not None and self._write_lock.locked():
                self._write_lock.release()

    @asynccontextmanager
    async def atransaction(self, mode: str = "immediate"):
        """
        Async context manager for a DB transaction.

        Yields a Result describing the transaction state. If BEGIN fails the
        yielded Result is an error and the body should bail out. Exceptions
        raised by the body roll the transaction back and propagate. A failed
        COMMIT is reported by flipping the yielded Result to an error.
        Entering while a transaction is already open joins it.
        """
        tx_state = Result.Ok(True)
        if self._tx_token():
            yield tx_state
            return

        begin_res = await self._begin_tx_async(mode)
        if not begin_res.ok or not begin_res.data:
            yield Result.Err(ErrorCode.DB_ERROR, str(begin_res.error or "Failed to begin transaction"))
            return

        token = str(begin_res.data)
        token_handle = _TX_TOKEN.set(token)
        try:
            yield tx_state
        except BaseException:
            await self._end_tx_async(token, commit=False)
            raise
        else:
            commit_res = await self._end_tx_async(token, commit=True)
            if not commit_res.ok:
                tx_state.ok = False
                tx_state.code = str(commit_res.code or ErrorCode.DB_ERROR.value)
                tx_state.error = str(commit_res.error or "Commit failed")
        finally:
            _TX_TOKEN.reset(token_handle)

    async def aclose(self):
        """Close every pooled and transaction connection."""
        self._closed = True
        for token in list(self._tx_conns.keys()):
            conn = self._tx_conns.pop(token, None)
            if conn is None:
                continue
            try:
                await conn.close()
            except Exception:
                pass
        while True:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                break
            try:
                await conn.close()
            except Exception:
                pass
        for conn in list(self._active_conns):
            try:
                await conn.close()
            except Exception:
                pass
        self._active_conns.clear()
        self._async_sem = None

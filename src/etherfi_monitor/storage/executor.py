"""Parameterized statement execution through the connection pool."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import Executable

from etherfi_monitor.storage.errors import (
    ConstraintViolationError,
    DatabaseConnectionError,
    QueryError,
    QueryTimeoutError,
    StorageError,
)
from etherfi_monitor.storage.pool import ConnectionPool

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 1000
STATEMENT_PREVIEW_CHARS = 100

# PostgreSQL SQLSTATE for "canceling statement due to statement timeout".
_QUERY_CANCELED = "57014"


@dataclass
class RowSet:
    """Rows returned by a statement, as plain dicts."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        if row is None:
            return None
        return next(iter(row.values()), None)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


def validate_limit(limit: Any) -> int:
    """Validate a row limit before it is placed in a statement.

    Raises:
        ValueError: If ``limit`` is not a positive integer.
    """
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValueError(f"limit must be a positive integer, got {limit!r}")
    return limit


def statement_preview(statement: Executable | str) -> str:
    """Leading text of a statement, for logs and error context."""
    sql = statement if isinstance(statement, str) else str(statement)
    return " ".join(sql.split())[:STATEMENT_PREVIEW_CHARS]


def _sqlstate(error: BaseException) -> str | None:
    orig = getattr(error, "orig", None)
    for source in (orig, getattr(orig, "__cause__", None)):
        if source is None:
            continue
        code = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if code:
            return str(code)
    return None


def wrap_database_error(
    error: BaseException,
    statement: Executable | str,
    params: Mapping[str, Any] | None,
    operation: str | None,
) -> StorageError:
    """Translate a SQLAlchemy / driver error into the storage error taxonomy."""
    if isinstance(error, StorageError):
        return error

    preview = statement_preview(statement)
    message = str(getattr(error, "orig", None) or error)

    if isinstance(error, sa_exc.IntegrityError):
        return ConstraintViolationError(
            message, statement=preview, params=params, operation=operation
        )
    if isinstance(error, TimeoutError) or _sqlstate(error) == _QUERY_CANCELED:
        return QueryTimeoutError(
            f"Statement timed out: {message}",
            statement=preview,
            params=params,
            operation=operation,
        )
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return DatabaseConnectionError(f"Connection lost during statement: {message}")
    return QueryError(message, statement=preview, params=params, operation=operation)


class QueryExecutor:
    """Runs single parameterized statements through a ConnectionPool.

    Caller data is always passed as bound parameters. Plain SQL strings are
    wrapped in ``text()`` and must reference parameters as ``:name``.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        slow_query_threshold_ms: int = SLOW_QUERY_THRESHOLD_MS,
    ) -> None:
        self.pool = pool
        self.slow_query_threshold_ms = slow_query_threshold_ms

    @property
    def dialect_name(self) -> str:
        return self.pool.dialect_name

    async def execute(
        self,
        statement: Executable | str,
        params: Mapping[str, Any] | None = None,
        *,
        connection: AsyncConnection | None = None,
        operation: str | None = None,
    ) -> RowSet:
        """Execute a statement and return its rows.

        Args:
            statement: SQLAlchemy Core statement or SQL text.
            params: Bound parameters.
            connection: Run on this connection (inside the caller's
                transaction) instead of acquiring one. The caller commits.
            operation: Name of the repository call, attached to errors.

        Returns:
            RowSet with all returned rows and the affected row count.

        Raises:
            QueryError: Statement failed (``QueryTimeoutError`` on timeout,
                ``ConstraintViolationError`` on constraint violations).
            DatabaseConnectionError: No connection could be obtained.
        """
        stmt = text(statement) if isinstance(statement, str) else statement
        started = time.perf_counter()
        try:
            if connection is not None:
                rows = await self._run(connection, stmt, params)
            else:
                async with self.pool.connection() as conn:
                    rows = await self._run(conn, stmt, params)
                    await conn.commit()
        except StorageError:
            raise
        except (sa_exc.SQLAlchemyError, TimeoutError) as e:
            wrapped = wrap_database_error(e, stmt, params, operation)
            logger.error(
                "Query error%s: %s | statement: %s | params: %s",
                f" in {operation}" if operation else "",
                e,
                statement_preview(stmt),
                dict(params) if params else {},
            )
            raise wrapped from e
        finally:
            self._report_duration(stmt, started)
        return rows

    async def _run(
        self,
        conn: AsyncConnection,
        stmt: Executable,
        params: Mapping[str, Any] | None,
    ) -> RowSet:
        result = await conn.execute(stmt, dict(params) if params else None)
        if result.returns_rows:
            rows = [dict(row) for row in result.mappings().all()]
            return RowSet(rows=rows, rowcount=len(rows))
        return RowSet(rows=[], rowcount=max(result.rowcount, 0))

    def _report_duration(self, stmt: Executable, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        if duration_ms > self.slow_query_threshold_ms:
            logger.warning(
                "Slow query detected (%dms): %s",
                duration_ms,
                statement_preview(stmt),
            )

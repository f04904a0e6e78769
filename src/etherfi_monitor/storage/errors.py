"""Exception hierarchy for the storage layer.

Callers branch on these types rather than on driver exceptions: every
SQLAlchemy / DBAPI error raised below the repositories is wrapped into one
of the classes here, with the original attached as ``__cause__``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class StorageError(Exception):
    """Base exception for storage layer errors."""


class DatabaseConnectionError(StorageError):
    """Raised when a connection cannot be obtained or was lost."""


class PoolTimeoutError(DatabaseConnectionError):
    """Raised when no pooled connection frees up within the connection timeout."""


class PoolClosedError(DatabaseConnectionError):
    """Raised when acquiring from a pool that is shutting down or closed."""


class QueryError(StorageError):
    """Raised when a statement fails.

    Attributes:
        statement: Leading text of the failing statement.
        params: Bound parameters supplied with the statement.
        operation: Repository call that issued the statement, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        statement: str,
        params: Mapping[str, Any] | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.statement = statement
        self.params = dict(params) if params else {}
        self.operation = operation

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class QueryTimeoutError(QueryError):
    """Raised when the database (or driver) aborts a statement on timeout."""


class ConstraintViolationError(QueryError):
    """Raised on unique / not-null / check constraint violations."""


class TransactionError(StorageError):
    """Raised when a transaction body fails with a raw database error."""


class SchemaInitError(StorageError):
    """Raised when schema creation or migration fails. Fatal at startup."""


class InvalidFilterError(StorageError, ValueError):
    """Raised for unrecognized anomaly filter keys or invalid filter values."""


class AnomalyNotFoundError(StorageError, LookupError):
    """Raised when an anomaly id does not exist."""


class InvalidStatusTransitionError(StorageError):
    """Raised when an anomaly status change is not allowed from its current state."""

    def __init__(self, anomaly_id: int, current: str, requested: str) -> None:
        super().__init__(
            f"Anomaly {anomaly_id} cannot transition from {current!r} to {requested!r}"
        )
        self.anomaly_id = anomaly_id
        self.current = current
        self.requested = requested

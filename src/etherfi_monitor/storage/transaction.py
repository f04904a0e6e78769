"""Atomic multi-statement execution on a single pooled connection."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from etherfi_monitor.storage.errors import StorageError, TransactionError
from etherfi_monitor.storage.pool import ConnectionPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionBody = Callable[[AsyncConnection], Awaitable[T]]


@dataclass(frozen=True)
class TransactionResult(Generic[T]):
    """Outcome of a transaction: a committed value or the failure that rolled it back."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the committed value or raise the failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class TransactionRunner:
    """Runs a caller-supplied body inside BEGIN / COMMIT on one connection.

    The body receives the connection and should issue its statements through
    ``QueryExecutor.execute(..., connection=conn)``. Nested transactions are
    not supported: the body must not open another transaction.

    Example:
        ```python
        async def body(conn):
            await executor.execute(stmt_a, connection=conn)
            await executor.execute(stmt_b, connection=conn)

        await runner.run(body)
        ```
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    async def run(self, body: TransactionBody[T]) -> T:
        """Run ``body`` atomically and return its value.

        Raises:
            StorageError: Storage failures raised by the body, unchanged.
            TransactionError: Raw SQLAlchemy errors from the body or commit.
            Exception: Any other failure raised by the body, unchanged.
        """
        result = await self.run_result(body)
        return result.unwrap()

    async def run_result(self, body: TransactionBody[T]) -> TransactionResult[T]:
        """Run ``body`` atomically and report the outcome instead of raising.

        Rollback happens in the cleanup path whenever the commit did not
        complete, including on cancellation. The connection is always
        released. Only ``DatabaseConnectionError`` subclasses from acquiring
        the connection propagate directly.
        """
        conn = await self.pool.acquire()
        transaction: AsyncTransaction | None = None
        committed = False
        try:
            transaction = await conn.begin()
            value = await body(conn)
            await transaction.commit()
            committed = True
            return TransactionResult(value=value)
        except Exception as e:
            logger.error("Transaction failed, rolling back: %s", e)
            return TransactionResult(error=self._wrap(e))
        finally:
            if not committed and transaction is not None:
                await self._rollback(transaction)
            await self.pool.release(conn)

    @staticmethod
    def _wrap(error: Exception) -> Exception:
        if isinstance(error, sa_exc.SQLAlchemyError) and not isinstance(error, StorageError):
            wrapped = TransactionError(f"Transaction failed: {error}")
            wrapped.__cause__ = error
            return wrapped
        return error

    @staticmethod
    async def _rollback(transaction: AsyncTransaction) -> None:
        if not transaction.is_active:
            return
        try:
            await transaction.rollback()
        except Exception as e:
            # Never mask the body's original failure.
            logger.error("Rollback failed: %s", e)

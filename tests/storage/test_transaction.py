"""Tests for the transaction runner."""

import logging
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from etherfi_monitor.storage.errors import QueryError, TransactionError
from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.pool import ConnectionPool
from etherfi_monitor.storage.repos import WhaleRepository, WhaleWalletDTO
from etherfi_monitor.storage.transaction import TransactionResult, TransactionRunner

WHALE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


class TestTransactionResult:
    """Tests for TransactionResult."""

    def test_success(self) -> None:
        result = TransactionResult(value=5)
        assert result.ok
        assert result.unwrap() == 5

    def test_failure(self) -> None:
        error = RuntimeError("boom")
        result: TransactionResult[int] = TransactionResult(error=error)
        assert not result.ok
        with pytest.raises(RuntimeError, match="boom"):
            result.unwrap()


class TestTransactionRunner:
    """Tests for TransactionRunner atomicity and cleanup."""

    @pytest.mark.asyncio
    async def test_commit_returns_value(
        self, transactions: TransactionRunner, executor: QueryExecutor
    ) -> None:
        whales = WhaleRepository(executor)

        async def body(conn: AsyncConnection) -> int:
            result = await whales.upsert(
                WhaleWalletDTO(address=WHALE, current_balance_eeth=Decimal("10")),
                connection=conn,
            )
            return result.id

        whale_id = await transactions.run(body)

        stored = await whales.get(WHALE)
        assert stored is not None
        assert stored.id == whale_id

    @pytest.mark.asyncio
    async def test_failure_on_second_statement_rolls_back_first(
        self,
        transactions: TransactionRunner,
        executor: QueryExecutor,
        pool: ConnectionPool,
    ) -> None:
        whales = WhaleRepository(executor)

        async def body(conn: AsyncConnection) -> None:
            await whales.upsert(WhaleWalletDTO(address=WHALE), connection=conn)
            await executor.execute("SELECT * FROM no_such_table", connection=conn)

        with pytest.raises(QueryError):
            await transactions.run(body)

        assert await whales.get(WHALE) is None
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_run_result_reports_failure(
        self, transactions: TransactionRunner, pool: ConnectionPool
    ) -> None:
        async def body(conn: AsyncConnection) -> None:
            raise ValueError("bad input")

        result = await transactions.run_result(body)

        assert not result.ok
        assert isinstance(result.error, ValueError)
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_raw_database_errors_are_wrapped(self, transactions: TransactionRunner) -> None:
        async def body(conn: AsyncConnection) -> None:
            await conn.execute(text("INSERT INTO no_such_table VALUES (1)"))

        with pytest.raises(TransactionError) as exc_info:
            await transactions.run(body)
        assert exc_info.value.__cause__ is not None

    @pytest.mark.asyncio
    async def test_connection_released_after_success(
        self, transactions: TransactionRunner, pool: ConnectionPool
    ) -> None:
        async def body(conn: AsyncConnection) -> str:
            return "done"

        assert await transactions.run(body) == "done"
        assert pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_rollback_failure_does_not_mask_body_error(
        self,
        transactions: TransactionRunner,
        pool: ConnectionPool,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        async def failing_rollback(self: AsyncTransaction) -> None:
            raise RuntimeError("server went away")

        monkeypatch.setattr(AsyncTransaction, "rollback", failing_rollback)

        async def body(conn: AsyncConnection) -> None:
            raise ValueError("bad input")

        with caplog.at_level(logging.ERROR, logger="etherfi_monitor.storage.transaction"):
            with pytest.raises(ValueError, match="bad input"):
                await transactions.run(body)

        assert "Rollback failed: server went away" in caplog.text
        assert pool.in_flight == 0

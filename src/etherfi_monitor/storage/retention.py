"""Retention job: bulk deletion of rows past their retention window.

Only rows strictly older than a window boundary are removed, so the job can
run concurrently with ingestion and be re-run at any time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, text
from sqlalchemy.ext.asyncio import AsyncConnection

from etherfi_monitor.storage.errors import StorageError
from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.models import (
    AnomalyModel,
    AnomalyStatus,
    TimeSeriesDataModel,
    TwitterSentimentModel,
    ValidatorMetricsModel,
)
from etherfi_monitor.storage.repos import window_start
from etherfi_monitor.storage.retry import RetryPolicy, with_retry
from etherfi_monitor.storage.schema import CLEANUP_ROUTINE_NAME
from etherfi_monitor.storage.transaction import TransactionRunner

logger = logging.getLogger(__name__)

RETENTION_WINDOWS: dict[str, timedelta] = {
    "time_series_data": timedelta(days=90),
    "twitter_sentiment": timedelta(days=60),
    "anomalies": timedelta(days=90),  # measured from resolved_at
    "validator_metrics": timedelta(days=90),
}


@dataclass(frozen=True)
class RetentionReport:
    """Rows deleted per table by one cleanup run."""

    ran_at: datetime
    deleted: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.deleted.values())


class RetentionJob:
    """Deletes aged-out rows from every retained table in one transaction.

    Anomalies are only eligible once ``resolved`` and only by resolution age;
    active and false-positive anomalies are never removed by age alone.
    """

    def __init__(self, executor: QueryExecutor, transactions: TransactionRunner) -> None:
        self.executor = executor
        self.transactions = transactions

    async def run_cleanup(self, *, now: datetime | None = None) -> RetentionReport:
        """Delete rows strictly older than each table's retention window.

        Args:
            now: Reference time for the window boundaries. Defaults to the
                database server clock.

        Returns:
            RetentionReport with per-table deleted row counts.
        """
        dialect_name = self.executor.dialect_name

        def older_than(column: Any, table: str) -> Any:
            return column < window_start(dialect_name, RETENTION_WINDOWS[table], now)

        statements = {
            "time_series_data": delete(TimeSeriesDataModel).where(
                older_than(TimeSeriesDataModel.timestamp, "time_series_data")
            ),
            "twitter_sentiment": delete(TwitterSentimentModel).where(
                older_than(TwitterSentimentModel.timestamp, "twitter_sentiment")
            ),
            "anomalies": delete(AnomalyModel).where(
                AnomalyModel.status == AnomalyStatus.RESOLVED.value,
                older_than(AnomalyModel.resolved_at, "anomalies"),
            ),
            "validator_metrics": delete(ValidatorMetricsModel).where(
                older_than(ValidatorMetricsModel.timestamp, "validator_metrics")
            ),
        }

        async def body(conn: AsyncConnection) -> dict[str, int]:
            deleted: dict[str, int] = {}
            for table, stmt in statements.items():
                rows = await self.executor.execute(
                    stmt, connection=conn, operation=f"retention.{table}"
                )
                deleted[table] = rows.rowcount
            return deleted

        deleted = await self.transactions.run(body)
        report = RetentionReport(ran_at=now or datetime.now(UTC), deleted=deleted)
        logger.info("Old data cleanup completed: %d rows deleted %s", report.total, deleted)
        return report

    async def run_server_routine(self) -> None:
        """Invoke the server-side ``cleanup_old_data()`` routine (PostgreSQL only).

        Raises:
            StorageError: On dialects without the routine.
        """
        if self.executor.dialect_name != "postgresql":
            raise StorageError(
                f"{CLEANUP_ROUTINE_NAME}() is only installed on PostgreSQL, "
                f"not {self.executor.dialect_name}"
            )
        await self.executor.execute(
            text(f"SELECT {CLEANUP_ROUTINE_NAME}()"), operation="retention.server_routine"
        )
        logger.info("Server-side cleanup routine completed")

    async def run_periodically(
        self,
        interval: float,
        stop_event: asyncio.Event,
        retry_policy: RetryPolicy | None = None,
    ) -> int:
        """Run cleanup every ``interval`` seconds until ``stop_event`` is set.

        A run that still fails after retries is logged and the loop carries
        on with the next interval.

        Returns:
            Number of cleanup runs that completed.
        """
        completed = 0
        while not stop_event.is_set():
            try:
                await with_retry(self.run_cleanup, retry_policy)
                completed += 1
            except StorageError as e:
                logger.error("Retention run failed: %s", e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                continue
        logger.info("Retention loop stopped after %d runs", completed)
        return completed

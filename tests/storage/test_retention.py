"""Tests for the retention job."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from etherfi_monitor.storage.errors import StorageError
from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.models import AnomalyStatus
from etherfi_monitor.storage.repos import (
    AnomalyDTO,
    AnomalyRepository,
    MetricSnapshotDTO,
    SentimentRepository,
    SentimentSampleDTO,
    TimeSeriesRepository,
    ValidatorRepository,
    ValidatorSnapshotDTO,
)
from etherfi_monitor.storage.retention import RETENTION_WINDOWS, RetentionJob, RetentionReport
from etherfi_monitor.storage.retry import RetryPolicy
from etherfi_monitor.storage.transaction import TransactionRunner

NOW = datetime(2026, 10, 1, tzinfo=UTC)


def days_ago(days: int) -> datetime:
    return NOW - timedelta(days=days)


@pytest.fixture
def job(executor: QueryExecutor, transactions: TransactionRunner) -> RetentionJob:
    return RetentionJob(executor, transactions)


async def create_anomaly(repo: AnomalyRepository, detected_days_ago: int, title: str) -> int:
    result = await repo.insert(
        AnomalyDTO(
            anomaly_type="peg_deviation",
            severity="MEDIUM",
            confidence=Decimal("0.7"),
            title=title,
            description="eETH traded below peg",
            detected_at=days_ago(detected_days_ago),
        )
    )
    return result.id


class TestRetentionWindows:
    """Tests for the fixed retention windows."""

    def test_windows(self) -> None:
        assert RETENTION_WINDOWS["time_series_data"] == timedelta(days=90)
        assert RETENTION_WINDOWS["twitter_sentiment"] == timedelta(days=60)
        assert RETENTION_WINDOWS["anomalies"] == timedelta(days=90)
        assert RETENTION_WINDOWS["validator_metrics"] == timedelta(days=90)

    def test_report_total(self) -> None:
        report = RetentionReport(ran_at=NOW, deleted={"a": 2, "b": 3})
        assert report.total == 5


class TestRunCleanup:
    """Tests for RetentionJob.run_cleanup."""

    @pytest.mark.asyncio
    async def test_deletes_only_rows_past_their_window(
        self, job: RetentionJob, executor: QueryExecutor
    ) -> None:
        time_series = TimeSeriesRepository(executor)
        sentiment = SentimentRepository(executor)
        validators = ValidatorRepository(executor)
        anomalies = AnomalyRepository(executor)

        await time_series.upsert(MetricSnapshotDTO(timestamp=days_ago(91)))
        await time_series.upsert(MetricSnapshotDTO(timestamp=days_ago(89)))
        await sentiment.upsert(SentimentSampleDTO(tweet_id="old", timestamp=days_ago(61)))
        await sentiment.upsert(SentimentSampleDTO(tweet_id="new", timestamp=days_ago(59)))
        await validators.upsert(ValidatorSnapshotDTO(timestamp=days_ago(91)))
        await validators.upsert(ValidatorSnapshotDTO(timestamp=days_ago(89)))

        resolved_old = await create_anomaly(anomalies, 120, "resolved long ago")
        await anomalies.update_status(resolved_old, AnomalyStatus.RESOLVED, now=days_ago(91))
        resolved_recent = await create_anomaly(anomalies, 120, "resolved recently")
        await anomalies.update_status(resolved_recent, AnomalyStatus.RESOLVED, now=days_ago(89))
        still_active = await create_anomaly(anomalies, 200, "never resolved")
        false_positive = await create_anomaly(anomalies, 200, "dismissed")
        await anomalies.update_status(false_positive, AnomalyStatus.FALSE_POSITIVE)

        report = await job.run_cleanup(now=NOW)

        assert report.ran_at == NOW
        assert report.deleted == {
            "time_series_data": 1,
            "twitter_sentiment": 1,
            "anomalies": 1,
            "validator_metrics": 1,
        }
        assert report.total == 4

        assert [r.timestamp for r in await time_series.list_recent(hours=24 * 365, now=NOW)] == [
            days_ago(89)
        ]
        assert [s.tweet_id for s in await sentiment.list_recent(hours=24 * 365, now=NOW)] == [
            "new"
        ]
        assert await anomalies.get(resolved_old) is None
        assert await anomalies.get(resolved_recent) is not None
        assert await anomalies.get(still_active) is not None
        assert await anomalies.get(false_positive) is not None

    @pytest.mark.asyncio
    async def test_rerun_deletes_nothing(self, job: RetentionJob, executor: QueryExecutor) -> None:
        await TimeSeriesRepository(executor).upsert(MetricSnapshotDTO(timestamp=days_ago(100)))

        first = await job.run_cleanup(now=NOW)
        second = await job.run_cleanup(now=NOW)

        assert first.total == 1
        assert second.total == 0

    @pytest.mark.asyncio
    async def test_defaults_to_server_clock(
        self, job: RetentionJob, executor: QueryExecutor
    ) -> None:
        time_series = TimeSeriesRepository(executor)
        current = datetime.now(UTC)
        await time_series.upsert(MetricSnapshotDTO(timestamp=current - timedelta(days=100)))
        await time_series.upsert(MetricSnapshotDTO(timestamp=current - timedelta(days=10)))

        report = await job.run_cleanup()

        assert report.deleted["time_series_data"] == 1
        remaining = await time_series.list_recent(hours=24 * 365)
        assert [r.timestamp for r in remaining] == [current - timedelta(days=10)]

    @pytest.mark.asyncio
    async def test_server_routine_requires_postgresql(self, job: RetentionJob) -> None:
        with pytest.raises(StorageError, match="PostgreSQL"):
            await job.run_server_routine()


class TestRunPeriodically:
    """Tests for the periodic retention loop."""

    @pytest.mark.asyncio
    async def test_returns_immediately_when_stopped(self, job: RetentionJob) -> None:
        stop = asyncio.Event()
        stop.set()
        assert await job.run_periodically(3600, stop) == 0

    @pytest.mark.asyncio
    async def test_failed_run_does_not_end_loop(self, job: RetentionJob) -> None:
        stop = asyncio.Event()
        calls = 0

        async def flaky_cleanup(*, now: datetime | None = None) -> RetentionReport:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StorageError("database unavailable")
            stop.set()
            return RetentionReport(ran_at=NOW)

        job.run_cleanup = flaky_cleanup  # type: ignore[method-assign]

        completed = await asyncio.wait_for(
            job.run_periodically(0.01, stop, RetryPolicy(max_attempts=1)), timeout=2.0
        )

        assert calls == 2
        assert completed == 1

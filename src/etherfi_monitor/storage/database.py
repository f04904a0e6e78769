"""Database manager: owns the pool and wires the storage components together.

There is no module-level state. The hosting process constructs one
``DatabaseManager``, starts it, hands it (or its repositories) to whatever
needs storage, and calls ``shutdown()`` from its own shutdown sequence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import func, select

from etherfi_monitor.storage.errors import DatabaseConnectionError, StorageError
from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.models import (
    AnomalyModel,
    AnomalyStatus,
    TimeSeriesDataModel,
    TwitterSentimentModel,
    WhaleWalletModel,
)
from etherfi_monitor.storage.pool import (
    ConnectionPool,
    FatalHandler,
    PoolConfig,
    PoolObserver,
    PoolStats,
)
from etherfi_monitor.storage.repos import (
    AnomalyRepository,
    SentimentRepository,
    TimeSeriesRepository,
    ValidatorRepository,
    WhaleRepository,
)
from etherfi_monitor.storage.retention import RetentionJob
from etherfi_monitor.storage.retry import RetryPolicy, with_retry
from etherfi_monitor.storage.schema import init_schema
from etherfi_monitor.storage.transaction import TransactionRunner

if TYPE_CHECKING:
    from etherfi_monitor.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseStats:
    """Row totals and most recent activity."""

    total_data_points: int
    total_whales: int
    total_anomalies: int
    active_anomalies: int
    total_tweets: int
    last_collection: datetime | None
    last_anomaly_detection: datetime | None


@dataclass(frozen=True)
class HealthStatus:
    """Result of a health check. Never raised, always returned."""

    status: Literal["healthy", "unhealthy"]
    checked_at: datetime
    pool: PoolStats | None = None
    stats: DatabaseStats | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class DatabaseManager:
    """Manages the connection pool and the components built on it.

    Example:
        ```python
        async with DatabaseManager.from_settings(get_settings()) as db:
            await db.init_schema()
            await db.time_series.upsert(MetricSnapshotDTO(tvl_usd=Decimal("1")))
        ```
    """

    def __init__(
        self,
        database_url: str,
        pool_config: PoolConfig | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        observer: PoolObserver | None = None,
        on_fatal: FatalHandler | None = None,
        ssl: bool = False,
        echo: bool = False,
    ) -> None:
        """Initialize database manager. Nothing connects until ``start()``.

        Args:
            database_url: Async SQLAlchemy connection URL.
            pool_config: Pool bounds and timeouts.
            retry_policy: Backoff used when opening the pool.
            observer: Receives pool lifecycle events.
            on_fatal: Called when an idle pooled connection fails unexpectedly.
            ssl: Require TLS for PostgreSQL.
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.pool = ConnectionPool(
            database_url,
            pool_config,
            observer=observer,
            on_fatal=on_fatal,
            ssl=ssl,
            echo=echo,
        )
        self.executor = QueryExecutor(self.pool)
        self.transactions = TransactionRunner(self.pool)

        self.time_series = TimeSeriesRepository(self.executor)
        self.whales = WhaleRepository(self.executor)
        self.anomalies = AnomalyRepository(self.executor)
        self.sentiment = SentimentRepository(self.executor)
        self.validators = ValidatorRepository(self.executor)
        self.retention = RetentionJob(self.executor, self.transactions)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> DatabaseManager:
        db = settings.database
        return cls(
            db.url(),
            db.pool_config(),
            retry_policy=settings.retry.policy(),
            ssl=db.ssl,
            echo=db.echo,
            **kwargs,
        )

    async def start(self) -> None:
        """Open the pool, retrying connection failures with backoff.

        Raises:
            DatabaseConnectionError: If the database is still unreachable
                after the last attempt.
        """
        policy = RetryPolicy(
            max_attempts=self.retry_policy.max_attempts,
            initial_delay=self.retry_policy.initial_delay,
            backoff_multiplier=self.retry_policy.backoff_multiplier,
            retry_on=(DatabaseConnectionError,),
        )
        await with_retry(self.pool.init, policy)

    async def init_schema(self, *, seed_initial: bool = True) -> None:
        await init_schema(self.pool, seed_initial=seed_initial)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Drain in-flight work and close the pool."""
        await self.pool.shutdown(timeout)

    async def __aenter__(self) -> DatabaseManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def test_connection(self) -> dict[str, Any]:
        """Round-trip to the server.

        Returns:
            ``{"server_time": ..., "version": ...}``.
        """
        if self.pool.dialect_name == "postgresql":
            stmt = "SELECT NOW() AS server_time, version() AS version"
        else:
            stmt = "SELECT CURRENT_TIMESTAMP AS server_time, sqlite_version() AS version"
        rows = await self.executor.execute(stmt, operation="database.test_connection")
        row = rows.first() or {}
        logger.info("Database connection OK (%s)", row.get("version"))
        return {"server_time": row.get("server_time"), "version": row.get("version")}

    async def database_stats(self) -> DatabaseStats:
        """Row totals per table and the most recent collection / detection."""
        stmt = select(
            select(func.count()).select_from(TimeSeriesDataModel).scalar_subquery().label(
                "total_data_points"
            ),
            select(func.count()).select_from(WhaleWalletModel).scalar_subquery().label(
                "total_whales"
            ),
            select(func.count()).select_from(AnomalyModel).scalar_subquery().label(
                "total_anomalies"
            ),
            select(func.count())
            .select_from(AnomalyModel)
            .where(AnomalyModel.status == AnomalyStatus.ACTIVE.value)
            .scalar_subquery()
            .label("active_anomalies"),
            select(func.count()).select_from(TwitterSentimentModel).scalar_subquery().label(
                "total_tweets"
            ),
            select(func.max(TimeSeriesDataModel.timestamp)).scalar_subquery().label(
                "last_collection"
            ),
            select(func.max(AnomalyModel.detected_at)).scalar_subquery().label(
                "last_anomaly_detection"
            ),
        )
        rows = await self.executor.execute(stmt, operation="database.stats")
        row = rows.first() or {}
        return DatabaseStats(
            total_data_points=int(row.get("total_data_points") or 0),
            total_whales=int(row.get("total_whales") or 0),
            total_anomalies=int(row.get("total_anomalies") or 0),
            active_anomalies=int(row.get("active_anomalies") or 0),
            total_tweets=int(row.get("total_tweets") or 0),
            last_collection=_aware(row.get("last_collection")),
            last_anomaly_detection=_aware(row.get("last_anomaly_detection")),
        )

    async def health_check(self) -> HealthStatus:
        """Check connectivity and report pool counters and table totals.

        Failures are reported in the returned status rather than raised.
        """
        checked_at = datetime.now(UTC)
        try:
            connection = await self.test_connection()
            stats = await self.database_stats()
            pool = self.pool.stats()
        except StorageError as e:
            logger.error("Health check failed: %s", e)
            return HealthStatus(status="unhealthy", checked_at=checked_at, error=str(e))

        return HealthStatus(
            status="healthy",
            checked_at=checked_at,
            pool=pool,
            stats=stats,
            details={"version": connection["version"]},
        )

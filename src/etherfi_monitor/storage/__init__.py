"""Storage layer - connection pool, schema, repositories and retention."""

from etherfi_monitor.storage.database import DatabaseManager, DatabaseStats, HealthStatus
from etherfi_monitor.storage.errors import (
    AnomalyNotFoundError,
    ConstraintViolationError,
    DatabaseConnectionError,
    InvalidFilterError,
    InvalidStatusTransitionError,
    PoolClosedError,
    PoolTimeoutError,
    QueryError,
    QueryTimeoutError,
    SchemaInitError,
    StorageError,
    TransactionError,
)
from etherfi_monitor.storage.executor import QueryExecutor, RowSet
from etherfi_monitor.storage.models import (
    AnomalyModel,
    AnomalyStatus,
    Base,
    CollectionStatus,
    SentimentLabel,
    Severity,
    TimeSeriesDataModel,
    TwitterSentimentModel,
    ValidatorMetricsModel,
    WhaleWalletModel,
)
from etherfi_monitor.storage.pool import ConnectionPool, PoolConfig, PoolEvent, PoolStats
from etherfi_monitor.storage.repos import (
    AnomalyDTO,
    AnomalyFilter,
    AnomalyRepository,
    BaselineStats,
    MetricBaseline,
    MetricSnapshotDTO,
    SentimentRepository,
    SentimentSampleDTO,
    SentimentStats,
    TimeSeriesRepository,
    UpsertResult,
    ValidatorRepository,
    ValidatorSnapshotDTO,
    WhaleRepository,
    WhaleWalletDTO,
)
from etherfi_monitor.storage.retention import RETENTION_WINDOWS, RetentionJob, RetentionReport
from etherfi_monitor.storage.retry import RetryPolicy, retrying, with_retry
from etherfi_monitor.storage.schema import drop_schema, init_schema
from etherfi_monitor.storage.transaction import TransactionResult, TransactionRunner

__all__ = [
    "RETENTION_WINDOWS",
    "AnomalyDTO",
    "AnomalyFilter",
    "AnomalyModel",
    "AnomalyNotFoundError",
    "AnomalyRepository",
    "AnomalyStatus",
    "Base",
    "BaselineStats",
    "CollectionStatus",
    "ConnectionPool",
    "ConstraintViolationError",
    "DatabaseConnectionError",
    "DatabaseManager",
    "DatabaseStats",
    "HealthStatus",
    "InvalidFilterError",
    "InvalidStatusTransitionError",
    "MetricBaseline",
    "MetricSnapshotDTO",
    "PoolClosedError",
    "PoolConfig",
    "PoolEvent",
    "PoolStats",
    "PoolTimeoutError",
    "QueryError",
    "QueryExecutor",
    "QueryTimeoutError",
    "RetentionJob",
    "RetentionReport",
    "RetryPolicy",
    "RowSet",
    "SchemaInitError",
    "SentimentLabel",
    "SentimentRepository",
    "SentimentSampleDTO",
    "SentimentStats",
    "Severity",
    "StorageError",
    "TimeSeriesDataModel",
    "TimeSeriesRepository",
    "TransactionError",
    "TransactionResult",
    "TransactionRunner",
    "TwitterSentimentModel",
    "UpsertResult",
    "ValidatorMetricsModel",
    "ValidatorRepository",
    "ValidatorSnapshotDTO",
    "WhaleRepository",
    "WhaleWalletDTO",
    "WhaleWalletModel",
    "drop_schema",
    "init_schema",
    "retrying",
    "with_retry",
]

"""Repository pattern implementations for data access.

This module provides typed upsert, insert and read operations over the
monitoring tables: metric snapshots, whale wallets, anomalies, sentiment
samples and validator snapshots. Every statement goes through a
``QueryExecutor`` so callers get the storage error taxonomy, bound
parameters and slow-query reporting for free.

Writes accept an optional ``connection`` so several of them can be grouped
in one ``TransactionRunner`` body.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, ClassVar, TypeVar

from sqlalchemy import Interval, Select, case, func, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import ColumnElement

from etherfi_monitor.storage.errors import (
    AnomalyNotFoundError,
    InvalidFilterError,
    InvalidStatusTransitionError,
    QueryError,
)
from etherfi_monitor.storage.executor import QueryExecutor, RowSet, validate_limit
from etherfi_monitor.storage.models import (
    AnomalyModel,
    AnomalyStatus,
    CollectionStatus,
    SentimentLabel,
    Severity,
    TimeSeriesDataModel,
    TwitterSentimentModel,
    ValidatorMetricsModel,
    WhaleWalletModel,
)
from etherfi_monitor.storage.schema import (
    active_anomalies_view,
    latest_metrics_view,
    recent_whale_movements_view,
)

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

DTO = TypeVar("DTO")


def dialect_insert(dialect_name: str) -> Any:
    """``INSERT`` construct supporting ``ON CONFLICT`` for the given dialect."""
    return pg_insert if dialect_name == "postgresql" else sqlite_insert


def _utc(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _from_row(cls: type[DTO], row: Mapping[str, Any]) -> DTO:
    """Build a DTO from a result row, ignoring columns the DTO does not carry."""
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    return cls(**{k: _utc(v) for k, v in row.items() if k in names})


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def window_start(dialect_name: str, delta: timedelta, now: datetime | None = None) -> Any:
    """Start of a trailing window of length ``delta``.

    Measured from ``now`` when given. Otherwise the boundary is computed by
    the database server from its own clock, so every host agrees with the
    server-side cleanup routine.
    """
    if now is not None:
        return now - delta
    if dialect_name == "postgresql":
        return func.now() - literal(delta, Interval())
    # SQLite stores UTC text timestamps; 'now' is UTC as well.
    return func.strftime(
        "%Y-%m-%d %H:%M:%f", "now", f"-{delta.total_seconds():.6f} seconds"
    )


def server_now(now: datetime | None = None) -> Any:
    """``now`` if given, else the database server's current timestamp."""
    return now if now is not None else func.now()


def _returned_row(rows: RowSet, operation: str) -> Mapping[str, Any]:
    row = rows.first()
    if row is None:
        raise QueryError(
            "Statement returned no row", statement="INSERT ... RETURNING", operation=operation
        )
    return row


def _positive(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def normalize_address(address: str) -> str:
    """Lowercase a wallet address after checking it is 0x + 40 hex chars.

    Raises:
        ValueError: If the address is malformed.
    """
    if not ADDRESS_PATTERN.match(address or ""):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return address.lower()


@dataclass(frozen=True)
class UpsertResult:
    """Key of a written row plus the id and timestamp the database holds for it."""

    id: int
    key: Any
    recorded_at: datetime | None = None


# ============================================================================
# Time series
# ============================================================================


@dataclass
class MetricSnapshotDTO:
    """Data transfer object for one metric collection cycle."""

    timestamp: datetime | None = None
    tvl_usd: Decimal | None = None
    tvl_eth: Decimal | None = None
    tvl_change_percent: Decimal | None = None
    unique_stakers: int | None = None
    new_stakers_24h: int | None = None
    deposit_count_24h: int | None = None
    withdrawal_count_24h: int | None = None
    total_volume_eth_24h: Decimal | None = None
    avg_transaction_size_eth: Decimal | None = None
    withdrawal_queue_size: int | None = None
    withdrawal_queue_eth: Decimal | None = None
    avg_withdrawal_wait_time_hours: Decimal | None = None
    eeth_eth_price_ratio: Decimal | None = None
    peg_deviation_percent: Decimal | None = None
    avg_gas_price_gwei: Decimal | None = None
    median_gas_price_gwei: Decimal | None = None
    total_validators: int | None = None
    active_validators: int | None = None
    data_source: str = "blockchain"
    collection_status: str = CollectionStatus.SUCCESS.value
    error_message: str | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MetricSnapshotDTO:
        return _from_row(cls, row)


@dataclass(frozen=True)
class MetricBaseline:
    """Mean and sample standard deviation of one metric."""

    mean: Decimal | None
    stddev: Decimal | None
    samples: int


@dataclass(frozen=True)
class BaselineStats:
    """Trailing-window aggregates over successful collection cycles."""

    tvl_usd: MetricBaseline
    unique_stakers: MetricBaseline
    withdrawal_queue_size: MetricBaseline
    peg_deviation_percent: MetricBaseline
    total_volume_eth_24h: MetricBaseline
    period_start: datetime | None
    period_end: datetime | None
    data_points: int


_BASELINE_METRICS = (
    "tvl_usd",
    "unique_stakers",
    "withdrawal_queue_size",
    "peg_deviation_percent",
    "total_volume_eth_24h",
)


def _baseline(count: Any, total: Any, total_sq: Any) -> MetricBaseline:
    """Mean and sample stddev from COUNT / SUM / SUM of squares."""
    n = int(count or 0)
    if n == 0:
        return MetricBaseline(mean=None, stddev=None, samples=0)
    s = _decimal(total) or Decimal(0)
    sq = _decimal(total_sq) or Decimal(0)
    mean = s / n
    if n < 2:
        return MetricBaseline(mean=mean, stddev=None, samples=n)
    variance = (sq - s * s / n) / (n - 1)
    # Rounding can leave a tiny negative variance for constant series.
    variance = max(variance, Decimal(0))
    return MetricBaseline(mean=mean, stddev=variance.sqrt(), samples=n)


class TimeSeriesRepository:
    """Repository for metric snapshots (``time_series_data``)."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "tvl_usd",
        "tvl_eth",
        "unique_stakers",
        "collection_status",
    )

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def upsert(
        self,
        dto: MetricSnapshotDTO,
        *,
        connection: AsyncConnection | None = None,
    ) -> UpsertResult:
        """Insert a snapshot, or refresh TVL, stakers and status for its timestamp."""
        CollectionStatus(dto.collection_status)
        values = {
            f.name: getattr(dto, f.name) for f in fields(MetricSnapshotDTO) if f.name != "id"
        }
        values["timestamp"] = dto.timestamp or datetime.now(UTC)

        insert = dialect_insert(self.executor.dialect_name)
        stmt = insert(TimeSeriesDataModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["timestamp"],
            set_={name: stmt.excluded[name] for name in self.MUTABLE_FIELDS},
        ).returning(TimeSeriesDataModel.id, TimeSeriesDataModel.timestamp)

        rows = await self.executor.execute(
            stmt, connection=connection, operation="time_series.upsert"
        )
        row = _returned_row(rows, "time_series.upsert")
        ts = _utc(row["timestamp"])
        return UpsertResult(id=row["id"], key=ts, recorded_at=ts)

    async def list_recent(
        self,
        hours: int = 24,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[MetricSnapshotDTO]:
        """Snapshots from the last ``hours`` hours, newest first."""
        window = timedelta(hours=_positive("hours", hours))
        cutoff = window_start(self.executor.dialect_name, window, now)
        stmt = (
            select(TimeSeriesDataModel.__table__)
            .where(TimeSeriesDataModel.timestamp >= cutoff)
            .order_by(TimeSeriesDataModel.timestamp.desc())
        )
        if limit is not None:
            stmt = stmt.limit(validate_limit(limit))
        rows = await self.executor.execute(stmt, operation="time_series.list_recent")
        return [MetricSnapshotDTO.from_row(r) for r in rows]

    async def latest(self) -> MetricSnapshotDTO | None:
        rows = await self.executor.execute(
            select(latest_metrics_view), operation="time_series.latest"
        )
        row = rows.first()
        return MetricSnapshotDTO.from_row(row) if row else None

    async def baseline(self, days: int = 30, *, now: datetime | None = None) -> BaselineStats:
        """Raw aggregates over successful snapshots in the trailing ``days`` window.

        Standard deviation is the sample standard deviation, derived from
        count, sum and sum of squares so it works on every dialect.
        """
        window = timedelta(days=_positive("days", days))
        cutoff = window_start(self.executor.dialect_name, window, now)
        t = TimeSeriesDataModel
        aggregates: list[Any] = []
        for name in _BASELINE_METRICS:
            col = getattr(t, name)
            aggregates += [
                func.count(col).label(f"{name}_n"),
                func.sum(col).label(f"{name}_sum"),
                func.sum(col * col).label(f"{name}_sumsq"),
            ]
        stmt = select(
            *aggregates,
            func.min(t.timestamp).label("period_start"),
            func.max(t.timestamp).label("period_end"),
            func.count().label("data_points"),
        ).where(
            t.timestamp >= cutoff,
            t.collection_status == CollectionStatus.SUCCESS.value,
        )
        rows = await self.executor.execute(stmt, operation="time_series.baseline")
        row = rows.first() or {}

        metrics = {
            name: _baseline(row.get(f"{name}_n"), row.get(f"{name}_sum"), row.get(f"{name}_sumsq"))
            for name in _BASELINE_METRICS
        }
        return BaselineStats(
            **metrics,
            period_start=_utc(row.get("period_start")),
            period_end=_utc(row.get("period_end")),
            data_points=int(row.get("data_points") or 0),
        )


# ============================================================================
# Whale wallets
# ============================================================================


@dataclass
class WhaleWalletDTO:
    """Data transfer object for a tracked whale wallet."""

    address: str
    current_balance_eeth: Decimal | None = None
    current_balance_usd: Decimal | None = None
    balance_24h_ago: Decimal | None = None
    balance_7d_ago: Decimal | None = None
    balance_30d_ago: Decimal | None = None
    change_24h_eeth: Decimal | None = None
    change_24h_percent: Decimal | None = None
    change_7d_eeth: Decimal | None = None
    change_7d_percent: Decimal | None = None
    total_deposits: int | None = 0
    total_withdrawals: int | None = 0
    last_transaction_hash: str | None = None
    last_transaction_time: datetime | None = None
    rank_position: int | None = None
    label: str | None = None
    is_contract: bool | None = False
    is_exchange: bool | None = False
    first_seen: datetime | None = None
    last_updated: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> WhaleWalletDTO:
        return _from_row(cls, row)


class WhaleRepository:
    """Repository for whale wallets, keyed by lowercase address."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "current_balance_eeth",
        "current_balance_usd",
        "change_24h_eeth",
        "change_24h_percent",
        "rank_position",
        "last_updated",
    )

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def upsert(
        self,
        dto: WhaleWalletDTO,
        *,
        connection: AsyncConnection | None = None,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Insert a wallet, or refresh balance, deltas, rank and ``last_updated``.

        Historical balances are taken from the DTO as supplied.
        """
        stamp = server_now(now)
        values = {
            f.name: getattr(dto, f.name)
            for f in fields(WhaleWalletDTO)
            if f.name not in ("id", "first_seen", "last_updated")
        }
        values["address"] = normalize_address(dto.address)
        values["total_deposits"] = dto.total_deposits or 0
        values["total_withdrawals"] = dto.total_withdrawals or 0
        values["is_contract"] = bool(dto.is_contract)
        values["is_exchange"] = bool(dto.is_exchange)

        insert = dialect_insert(self.executor.dialect_name)
        stmt = insert(WhaleWalletModel).values(**values, first_seen=stamp, last_updated=stamp)
        stmt = stmt.on_conflict_do_update(
            index_elements=["address"],
            set_={name: stmt.excluded[name] for name in self.MUTABLE_FIELDS},
        ).returning(WhaleWalletModel.id, WhaleWalletModel.address, WhaleWalletModel.last_updated)

        rows = await self.executor.execute(
            stmt, connection=connection, operation="whales.upsert"
        )
        row = _returned_row(rows, "whales.upsert")
        return UpsertResult(id=row["id"], key=row["address"], recorded_at=_utc(row["last_updated"]))

    async def get(self, address: str) -> WhaleWalletDTO | None:
        stmt = select(WhaleWalletModel.__table__).where(
            WhaleWalletModel.address == normalize_address(address)
        )
        rows = await self.executor.execute(stmt, operation="whales.get")
        row = rows.first()
        return WhaleWalletDTO.from_row(row) if row else None

    async def top(self, limit: int = 20) -> list[WhaleWalletDTO]:
        """Largest holders by current eETH balance."""
        stmt = (
            select(WhaleWalletModel.__table__)
            .order_by(WhaleWalletModel.current_balance_eeth.desc())
            .limit(validate_limit(limit))
        )
        rows = await self.executor.execute(stmt, operation="whales.top")
        return [WhaleWalletDTO.from_row(r) for r in rows]

    async def recent_movements(self) -> list[WhaleWalletDTO]:
        """Wallets whose 24h change exceeds the movement threshold, largest first."""
        view = recent_whale_movements_view
        stmt = select(view).order_by(func.abs(view.c.change_24h_percent).desc())
        rows = await self.executor.execute(stmt, operation="whales.recent_movements")
        return [WhaleWalletDTO.from_row(r) for r in rows]


# ============================================================================
# Anomalies
# ============================================================================


@dataclass
class AnomalyDTO:
    """Data transfer object for a detected anomaly.

    ``baseline_data``, ``recent_data``, ``similar_past_events`` and
    ``ai_response`` are opaque JSON documents, stored and returned verbatim.
    """

    anomaly_type: str
    severity: str
    confidence: Decimal
    title: str
    description: str
    recommendation: str | None = None
    affected_metrics: list[str] | None = None
    baseline_data: Any | None = None
    recent_data: Any | None = None
    statistical_significance: Decimal | None = None
    historical_comparison: str | None = None
    similar_past_events: Any | None = None
    ai_prompt: str | None = None
    ai_response: Any | None = None
    analysis_duration_ms: int | None = None
    status: str = AnomalyStatus.ACTIVE.value
    detected_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    user_acknowledged: bool | None = False
    user_notes: str | None = None
    view_count: int | None = 0
    last_viewed_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AnomalyDTO:
        return _from_row(cls, row)


def severity_rank(severity: ColumnElement[Any]) -> ColumnElement[int]:
    """SQL expression ranking severities, 1 being the most urgent."""
    return case({s.value: s.rank for s in Severity}, value=severity, else_=len(Severity) + 1)


@dataclass(frozen=True)
class AnomalyFilter:
    """Conjunctive anomaly filter.

    Each set field contributes exactly one bound predicate; unset fields
    contribute nothing.

    Example:
        ```python
        flt = AnomalyFilter.from_mapping({"severity": "HIGH", "limit": 10})
        anomalies = await repo.query(flt)
        ```
    """

    KEYS: ClassVar[frozenset[str]] = frozenset({"status", "severity", "type", "since", "limit"})

    status: AnomalyStatus | None = None
    severity: Severity | None = None
    anomaly_type: str | None = None
    since: datetime | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        try:
            if self.status is not None:
                object.__setattr__(self, "status", AnomalyStatus(self.status))
            if self.severity is not None:
                object.__setattr__(self, "severity", Severity(self.severity))
            if self.limit is not None:
                validate_limit(self.limit)
        except ValueError as e:
            raise InvalidFilterError(str(e)) from e
        if self.since is not None and not isinstance(self.since, datetime):
            raise InvalidFilterError(f"since must be a datetime, got {self.since!r}")

    @classmethod
    def from_mapping(cls, filters: Mapping[str, Any]) -> AnomalyFilter:
        """Build a filter from loose keys (``status``, ``severity``, ``type``, ``since``, ``limit``).

        Raises:
            InvalidFilterError: On unrecognized keys or invalid values.
        """
        unknown = set(filters) - cls.KEYS
        if unknown:
            raise InvalidFilterError(f"Unrecognized anomaly filter keys: {sorted(unknown)}")
        return cls(
            status=filters.get("status"),
            severity=filters.get("severity"),
            anomaly_type=filters.get("type"),
            since=filters.get("since"),
            limit=filters.get("limit"),
        )

    def clauses(self) -> list[ColumnElement[bool]]:
        """WHERE fragments for the set fields, in a fixed order."""
        a = AnomalyModel
        clauses: list[ColumnElement[bool]] = []
        if self.status is not None:
            clauses.append(a.status == self.status.value)
        if self.severity is not None:
            clauses.append(a.severity == self.severity.value)
        if self.anomaly_type is not None:
            clauses.append(a.anomaly_type == self.anomaly_type)
        if self.since is not None:
            clauses.append(a.detected_at >= self.since)
        return clauses

    def apply(self, stmt: Select[Any]) -> Select[Any]:
        if clauses := self.clauses():
            stmt = stmt.where(*clauses)
        if self.limit is not None:
            stmt = stmt.limit(self.limit)
        return stmt


class AnomalyRepository:
    """Repository for anomalies and their lifecycle.

    Status only moves ``active`` -> ``resolved`` | ``false_positive``.
    Recording a view and acknowledging are allowed in any status.
    """

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def insert(
        self,
        dto: AnomalyDTO,
        *,
        connection: AsyncConnection | None = None,
    ) -> UpsertResult:
        """Store a new anomaly. Returns its id and ``detected_at``."""
        Severity(dto.severity)
        AnomalyStatus(dto.status)
        confidence = _decimal(dto.confidence)
        if confidence is None or not Decimal(0) <= confidence <= Decimal(1):
            raise ValueError(f"confidence must be within [0, 1], got {dto.confidence!r}")

        values = {
            f.name: getattr(dto, f.name)
            for f in fields(AnomalyDTO)
            if f.name not in ("id", "view_count", "last_viewed_at", "user_acknowledged")
        }
        values["confidence"] = confidence
        values["affected_metrics"] = list(dto.affected_metrics or [])
        values["detected_at"] = dto.detected_at or datetime.now(UTC)

        stmt = (
            AnomalyModel.__table__.insert()
            .values(**values)
            .returning(AnomalyModel.id, AnomalyModel.detected_at)
        )
        rows = await self.executor.execute(
            stmt, connection=connection, operation="anomalies.insert"
        )
        row = _returned_row(rows, "anomalies.insert")
        detected_at = _utc(row["detected_at"])
        logger.info("Stored %s anomaly %d (%s)", dto.severity, row["id"], dto.anomaly_type)
        return UpsertResult(id=row["id"], key=row["id"], recorded_at=detected_at)

    async def get(self, anomaly_id: int) -> AnomalyDTO | None:
        stmt = select(AnomalyModel.__table__).where(AnomalyModel.id == anomaly_id)
        rows = await self.executor.execute(stmt, operation="anomalies.get")
        row = rows.first()
        return AnomalyDTO.from_row(row) if row else None

    async def list_active(self) -> list[AnomalyDTO]:
        """Active anomalies, most severe first, newest first within a severity."""
        view = active_anomalies_view
        stmt = select(view).order_by(severity_rank(view.c.severity), view.c.detected_at.desc())
        rows = await self.executor.execute(stmt, operation="anomalies.list_active")
        return [AnomalyDTO.from_row(r) for r in rows]

    async def query(
        self,
        filters: AnomalyFilter | Mapping[str, Any] | None = None,
    ) -> list[AnomalyDTO]:
        """Anomalies matching ``filters``, newest first.

        Raises:
            InvalidFilterError: On unrecognized keys or invalid values.
        """
        if filters is None:
            flt = AnomalyFilter()
        elif isinstance(filters, AnomalyFilter):
            flt = filters
        else:
            flt = AnomalyFilter.from_mapping(filters)

        stmt = select(AnomalyModel.__table__).order_by(AnomalyModel.detected_at.desc())
        rows = await self.executor.execute(flt.apply(stmt), operation="anomalies.query")
        return [AnomalyDTO.from_row(r) for r in rows]

    async def record_view(self, anomaly_id: int, *, now: datetime | None = None) -> AnomalyDTO:
        """Increment ``view_count`` and stamp ``last_viewed_at``. Status is untouched.

        Raises:
            AnomalyNotFoundError: If the id does not exist.
        """
        a = AnomalyModel
        stmt = (
            update(a)
            .where(a.id == anomaly_id)
            .values(view_count=a.view_count + 1, last_viewed_at=server_now(now))
            .returning(*a.__table__.c)
        )
        rows = await self.executor.execute(stmt, operation="anomalies.record_view")
        return self._single(rows, anomaly_id)

    async def update_status(
        self,
        anomaly_id: int,
        status: AnomalyStatus | str,
        *,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> AnomalyDTO:
        """Move an active anomaly to a terminal status.

        ``resolved_at`` is set only when resolving. The status guard is part
        of the UPDATE so concurrent transitions cannot both succeed.

        Raises:
            AnomalyNotFoundError: If the id does not exist.
            InvalidStatusTransitionError: If the anomaly is not active or
                ``status`` is ``active``.
        """
        target = AnomalyStatus(status)
        a = AnomalyModel

        values: dict[str, Any] = {"status": target.value}
        if target is AnomalyStatus.RESOLVED:
            values["resolved_at"] = server_now(now)
        if notes is not None:
            values["resolution_notes"] = notes

        if AnomalyStatus.ACTIVE.can_transition_to(target):
            stmt = (
                update(a)
                .where(a.id == anomaly_id, a.status == AnomalyStatus.ACTIVE.value)
                .values(**values)
                .returning(*a.__table__.c)
            )
            rows = await self.executor.execute(stmt, operation="anomalies.update_status")
            row = rows.first()
            if row is not None:
                logger.info("Anomaly %d marked %s", anomaly_id, target.value)
                return AnomalyDTO.from_row(row)

        current = await self.get(anomaly_id)
        if current is None:
            raise AnomalyNotFoundError(f"Anomaly {anomaly_id} not found")
        raise InvalidStatusTransitionError(anomaly_id, current.status, target.value)

    async def acknowledge(self, anomaly_id: int, *, notes: str | None = None) -> AnomalyDTO:
        """Flag an anomaly as acknowledged by an operator, optionally with notes.

        Raises:
            AnomalyNotFoundError: If the id does not exist.
        """
        a = AnomalyModel
        values: dict[str, Any] = {"user_acknowledged": True}
        if notes is not None:
            values["user_notes"] = notes
        stmt = update(a).where(a.id == anomaly_id).values(**values).returning(*a.__table__.c)
        rows = await self.executor.execute(stmt, operation="anomalies.acknowledge")
        return self._single(rows, anomaly_id)

    @staticmethod
    def _single(rows: RowSet, anomaly_id: int) -> AnomalyDTO:
        row = rows.first()
        if row is None:
            raise AnomalyNotFoundError(f"Anomaly {anomaly_id} not found")
        return AnomalyDTO.from_row(row)


# ============================================================================
# Sentiment
# ============================================================================


@dataclass
class SentimentSampleDTO:
    """Data transfer object for one scored social post."""

    tweet_id: str
    tweet_text: str | None = None
    author_username: str | None = None
    author_followers: int | None = None
    sentiment_score: Decimal | None = None
    sentiment_label: str | None = None
    confidence: Decimal | None = None
    retweet_count: int | None = None
    like_count: int | None = None
    reply_count: int | None = None
    keywords: list[str] | None = field(default_factory=list)
    is_influential: bool | None = False
    timestamp: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> SentimentSampleDTO:
        return _from_row(cls, row)


@dataclass(frozen=True)
class SentimentStats:
    """Aggregate sentiment over a trailing window."""

    avg_sentiment: Decimal | None
    positive_count: int
    negative_count: int
    neutral_count: int
    total_tweets: int
    total_retweets: int
    total_likes: int


class SentimentRepository:
    """Repository for social sentiment samples, keyed by ``tweet_id``."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("retweet_count", "like_count", "reply_count")

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def upsert(
        self,
        dto: SentimentSampleDTO,
        *,
        connection: AsyncConnection | None = None,
    ) -> UpsertResult:
        """Insert a post, or refresh only its engagement counters."""
        score = _decimal(dto.sentiment_score)
        if score is not None and not Decimal(-1) <= score <= Decimal(1):
            raise ValueError(f"sentiment_score must be within [-1, 1], got {dto.sentiment_score!r}")
        if dto.sentiment_label is not None:
            SentimentLabel(dto.sentiment_label)

        values = {f.name: getattr(dto, f.name) for f in fields(SentimentSampleDTO) if f.name != "id"}
        values["keywords"] = list(dto.keywords or [])
        values["is_influential"] = bool(dto.is_influential)
        values["timestamp"] = dto.timestamp or datetime.now(UTC)

        insert = dialect_insert(self.executor.dialect_name)
        stmt = insert(TwitterSentimentModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tweet_id"],
            set_={name: stmt.excluded[name] for name in self.MUTABLE_FIELDS},
        ).returning(
            TwitterSentimentModel.id,
            TwitterSentimentModel.tweet_id,
            TwitterSentimentModel.timestamp,
        )
        rows = await self.executor.execute(
            stmt, connection=connection, operation="sentiment.upsert"
        )
        row = _returned_row(rows, "sentiment.upsert")
        return UpsertResult(id=row["id"], key=row["tweet_id"], recorded_at=_utc(row["timestamp"]))

    async def list_recent(
        self,
        hours: int = 24,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[SentimentSampleDTO]:
        window = timedelta(hours=_positive("hours", hours))
        cutoff = window_start(self.executor.dialect_name, window, now)
        t = TwitterSentimentModel
        stmt = select(t.__table__).where(t.timestamp >= cutoff).order_by(t.timestamp.desc())
        if limit is not None:
            stmt = stmt.limit(validate_limit(limit))
        rows = await self.executor.execute(stmt, operation="sentiment.list_recent")
        return [SentimentSampleDTO.from_row(r) for r in rows]

    async def stats(self, hours: int = 24, *, now: datetime | None = None) -> SentimentStats:
        window = timedelta(hours=_positive("hours", hours))
        cutoff = window_start(self.executor.dialect_name, window, now)
        t = TwitterSentimentModel

        def label_count(label: SentimentLabel) -> Any:
            return func.coalesce(
                func.sum(case((t.sentiment_label == label.value, 1), else_=0)), 0
            ).label(f"{label.value}_count")

        stmt = select(
            func.avg(t.sentiment_score).label("avg_sentiment"),
            label_count(SentimentLabel.POSITIVE),
            label_count(SentimentLabel.NEGATIVE),
            label_count(SentimentLabel.NEUTRAL),
            func.count().label("total_tweets"),
            func.coalesce(func.sum(t.retweet_count), 0).label("total_retweets"),
            func.coalesce(func.sum(t.like_count), 0).label("total_likes"),
        ).where(t.timestamp >= cutoff)
        rows = await self.executor.execute(stmt, operation="sentiment.stats")
        row = rows.first() or {}
        return SentimentStats(
            avg_sentiment=_decimal(row.get("avg_sentiment")),
            positive_count=int(row.get("positive_count") or 0),
            negative_count=int(row.get("negative_count") or 0),
            neutral_count=int(row.get("neutral_count") or 0),
            total_tweets=int(row.get("total_tweets") or 0),
            total_retweets=int(row.get("total_retweets") or 0),
            total_likes=int(row.get("total_likes") or 0),
        )


# ============================================================================
# Validators
# ============================================================================


@dataclass
class ValidatorSnapshotDTO:
    """Data transfer object for one validator metrics snapshot."""

    timestamp: datetime | None = None
    total_validators: int | None = None
    active_validators: int | None = None
    exited_validators: int | None = None
    slashed_validators: int | None = None
    avg_effectiveness: Decimal | None = None
    total_rewards_eth: Decimal | None = None
    total_penalties_eth: Decimal | None = None
    net_rewards_eth: Decimal | None = None
    estimated_apr: Decimal | None = None
    estimated_apy: Decimal | None = None
    etherfi_apr: Decimal | None = None
    network_avg_apr: Decimal | None = None
    apr_vs_network: Decimal | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ValidatorSnapshotDTO:
        return _from_row(cls, row)


class ValidatorRepository:
    """Repository for validator snapshots, keyed by ``timestamp``."""

    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("active_validators", "estimated_apr")

    def __init__(self, executor: QueryExecutor) -> None:
        self.executor = executor

    async def upsert(
        self,
        dto: ValidatorSnapshotDTO,
        *,
        connection: AsyncConnection | None = None,
    ) -> UpsertResult:
        values = {
            f.name: getattr(dto, f.name) for f in fields(ValidatorSnapshotDTO) if f.name != "id"
        }
        values["timestamp"] = dto.timestamp or datetime.now(UTC)

        insert = dialect_insert(self.executor.dialect_name)
        stmt = insert(ValidatorMetricsModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["timestamp"],
            set_={name: stmt.excluded[name] for name in self.MUTABLE_FIELDS},
        ).returning(ValidatorMetricsModel.id, ValidatorMetricsModel.timestamp)
        rows = await self.executor.execute(
            stmt, connection=connection, operation="validators.upsert"
        )
        row = _returned_row(rows, "validators.upsert")
        ts = _utc(row["timestamp"])
        return UpsertResult(id=row["id"], key=ts, recorded_at=ts)

    async def latest(self) -> ValidatorSnapshotDTO | None:
        t = ValidatorMetricsModel
        stmt = select(t.__table__).order_by(t.timestamp.desc()).limit(1)
        rows = await self.executor.execute(stmt, operation="validators.latest")
        row = rows.first()
        return ValidatorSnapshotDTO.from_row(row) if row else None

    async def list_recent(
        self,
        hours: int = 24,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[ValidatorSnapshotDTO]:
        window = timedelta(hours=_positive("hours", hours))
        cutoff = window_start(self.executor.dialect_name, window, now)
        t = ValidatorMetricsModel
        stmt = select(t.__table__).where(t.timestamp >= cutoff).order_by(t.timestamp.desc())
        if limit is not None:
            stmt = stmt.limit(validate_limit(limit))
        rows = await self.executor.execute(stmt, operation="validators.list_recent")
        return [ValidatorSnapshotDTO.from_row(r) for r in rows]

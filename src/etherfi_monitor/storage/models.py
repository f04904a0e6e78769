"""SQLAlchemy models for persistent storage.

This module defines the five monitoring tables: periodic metric snapshots,
tracked whale wallets, AI-flagged anomalies, social sentiment samples and
validator snapshots. Tables are intentionally denormalized: there are no
foreign keys, rows are cross-referenced by timestamp or address at query
time.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# TEXT[] on PostgreSQL, a JSON list elsewhere.
StringList = JSON().with_variant(ARRAY(Text()), "postgresql")
# Opaque documents, stored and returned verbatim.
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CollectionStatus(str, Enum):
    """Outcome of a metric collection cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    TEST = "test"
    INITIAL = "initial"


class Severity(str, Enum):
    """Anomaly severity. ``rank`` 1 is the most urgent."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
}


class AnomalyStatus(str, Enum):
    """Anomaly lifecycle state. ``active`` is the only non-terminal state."""

    ACTIVE = "active"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"

    def can_transition_to(self, target: AnomalyStatus) -> bool:
        return self is AnomalyStatus.ACTIVE and target is not AnomalyStatus.ACTIVE


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TimeSeriesDataModel(Base):
    """One row per metric collection cycle.

    Re-ingestion for the same timestamp only updates TVL, staker count and
    collection status; everything else is set once on insert.
    """

    __tablename__ = "time_series_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    # TVL
    tvl_usd: Mapped[Decimal | None] = mapped_column(Numeric(20, 2))
    tvl_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    tvl_change_percent: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))

    # Stakers
    unique_stakers: Mapped[int | None] = mapped_column(Integer)
    new_stakers_24h: Mapped[int | None] = mapped_column(Integer)

    # Deposits / withdrawals
    deposit_count_24h: Mapped[int | None] = mapped_column(Integer)
    withdrawal_count_24h: Mapped[int | None] = mapped_column(Integer)
    total_volume_eth_24h: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    avg_transaction_size_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))

    # Withdrawal queue
    withdrawal_queue_size: Mapped[int | None] = mapped_column(Integer)
    withdrawal_queue_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    avg_withdrawal_wait_time_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Peg health
    eeth_eth_price_ratio: Mapped[Decimal | None] = mapped_column(Numeric(10, 8))
    peg_deviation_percent: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))

    # Gas
    avg_gas_price_gwei: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    median_gas_price_gwei: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Validator summary
    total_validators: Mapped[int | None] = mapped_column(Integer)
    active_validators: Mapped[int | None] = mapped_column(Integer)

    data_source: Mapped[str] = mapped_column(
        String(50), default="blockchain", server_default="blockchain"
    )
    collection_status: Mapped[str] = mapped_column(
        String(20),
        default=CollectionStatus.SUCCESS.value,
        server_default=CollectionStatus.SUCCESS.value,
    )
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("timestamp", name="unique_timestamp"),
        Index("idx_time_series_tvl", "tvl_usd"),
        Index("idx_time_series_peg", "peg_deviation_percent"),
    )


class WhaleWalletModel(Base):
    """Tracked large holder, one row per address."""

    __tablename__ = "whale_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    current_balance_eeth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    current_balance_usd: Mapped[Decimal | None] = mapped_column(Numeric(20, 2))

    # Supplied by the collector, never computed here.
    balance_24h_ago: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    balance_7d_ago: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    balance_30d_ago: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))

    change_24h_eeth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    change_24h_percent: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    change_7d_eeth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    change_7d_percent: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))

    total_deposits: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_withdrawals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_transaction_hash: Mapped[str | None] = mapped_column(String(66))
    last_transaction_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    rank_position: Mapped[int | None] = mapped_column(Integer)

    label: Mapped[str | None] = mapped_column(String(100))
    is_contract: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    is_exchange: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())

    __table_args__ = (
        UniqueConstraint("address", name="unique_address"),
        Index("idx_whale_address", "address"),
        Index("idx_whale_rank", "rank_position"),
    )


class TwitterSentimentModel(Base):
    """One row per social post. Sentiment scoring is immutable once stored."""

    __tablename__ = "twitter_sentiment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    tweet_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tweet_text: Mapped[str | None] = mapped_column(Text)
    author_username: Mapped[str | None] = mapped_column(String(100))
    author_followers: Mapped[int | None] = mapped_column(Integer)

    sentiment_score: Mapped[Decimal | None] = mapped_column(Numeric(3, 2))  # -1.0 .. 1.0
    sentiment_label: Mapped[str | None] = mapped_column(String(20))
    confidence: Mapped[Decimal | None] = mapped_column(Numeric(3, 2))  # 0.0 .. 1.0

    retweet_count: Mapped[int | None] = mapped_column(Integer)
    like_count: Mapped[int | None] = mapped_column(Integer)
    reply_count: Mapped[int | None] = mapped_column(Integer)

    keywords: Mapped[list[str] | None] = mapped_column(StringList)
    is_influential: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())

    __table_args__ = (
        UniqueConstraint("tweet_id", name="unique_tweet"),
        Index("idx_sentiment_score", "sentiment_score"),
        Index("idx_sentiment_label", "sentiment_label"),
    )


class ValidatorMetricsModel(Base):
    """Validator performance, one row per collection cycle."""

    __tablename__ = "validator_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    total_validators: Mapped[int | None] = mapped_column(Integer)
    active_validators: Mapped[int | None] = mapped_column(Integer)
    exited_validators: Mapped[int | None] = mapped_column(Integer)
    slashed_validators: Mapped[int | None] = mapped_column(Integer)

    avg_effectiveness: Mapped[Decimal | None] = mapped_column(Numeric(5, 4))
    total_rewards_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    total_penalties_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))
    net_rewards_eth: Mapped[Decimal | None] = mapped_column(Numeric(20, 8))

    estimated_apr: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    estimated_apy: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))

    etherfi_apr: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    network_avg_apr: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    apr_vs_network: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))

    __table_args__ = (
        UniqueConstraint("timestamp", name="unique_validator_timestamp"),
    )


class AnomalyModel(Base):
    """Irregularity flagged by the external analysis engine.

    Mutated only through status transitions, acknowledgement and view
    counting. Deleted only by retention once resolved and aged out.
    """

    __tablename__ = "anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    anomaly_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str | None] = mapped_column(Text)

    affected_metrics: Mapped[list[str] | None] = mapped_column(StringList)

    baseline_data: Mapped[Any | None] = mapped_column(JSONDocument)
    recent_data: Mapped[Any | None] = mapped_column(JSONDocument)
    statistical_significance: Mapped[Decimal | None] = mapped_column(Numeric(10, 6))

    historical_comparison: Mapped[str | None] = mapped_column(Text)
    similar_past_events: Mapped[Any | None] = mapped_column(JSONDocument)

    ai_prompt: Mapped[str | None] = mapped_column(Text)
    ai_response: Mapped[Any | None] = mapped_column(JSONDocument)
    analysis_duration_ms: Mapped[int | None] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(
        String(20),
        default=AnomalyStatus.ACTIVE.value,
        server_default=AnomalyStatus.ACTIVE.value,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolution_notes: Mapped[str | None] = mapped_column(Text)

    user_acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    user_notes: Mapped[str | None] = mapped_column(Text)

    view_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_anomaly_type", "anomaly_type"),
        Index("idx_anomaly_severity", "severity"),
        Index("idx_anomaly_status", "status"),
    )


# Descending indexes for newest-first / largest-first reads.
Index("idx_time_series_timestamp", TimeSeriesDataModel.timestamp.desc())
Index("idx_whale_balance", WhaleWalletModel.current_balance_eeth.desc())
Index("idx_whale_change", WhaleWalletModel.change_24h_percent.desc())
Index("idx_sentiment_timestamp", TwitterSentimentModel.timestamp.desc())
Index("idx_validator_timestamp", ValidatorMetricsModel.timestamp.desc())
Index("idx_anomaly_detected_at", AnomalyModel.detected_at.desc())
Index("idx_anomaly_confidence", AnomalyModel.confidence.desc())

"""Initial schema: monitoring tables, read views and the cleanup routine.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from etherfi_monitor.storage.schema import CLEANUP_ROUTINE, CLEANUP_ROUTINE_NAME, VIEWS, create_view_sql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Metric snapshots
    op.create_table(
        "time_series_data",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tvl_usd", sa.Numeric(20, 2), nullable=True),
        sa.Column("tvl_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("tvl_change_percent", sa.Numeric(10, 4), nullable=True),
        sa.Column("unique_stakers", sa.Integer(), nullable=True),
        sa.Column("new_stakers_24h", sa.Integer(), nullable=True),
        sa.Column("deposit_count_24h", sa.Integer(), nullable=True),
        sa.Column("withdrawal_count_24h", sa.Integer(), nullable=True),
        sa.Column("total_volume_eth_24h", sa.Numeric(20, 8), nullable=True),
        sa.Column("avg_transaction_size_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("withdrawal_queue_size", sa.Integer(), nullable=True),
        sa.Column("withdrawal_queue_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("avg_withdrawal_wait_time_hours", sa.Numeric(10, 2), nullable=True),
        sa.Column("eeth_eth_price_ratio", sa.Numeric(10, 8), nullable=True),
        sa.Column("peg_deviation_percent", sa.Numeric(10, 4), nullable=True),
        sa.Column("avg_gas_price_gwei", sa.Numeric(10, 2), nullable=True),
        sa.Column("median_gas_price_gwei", sa.Numeric(10, 2), nullable=True),
        sa.Column("total_validators", sa.Integer(), nullable=True),
        sa.Column("active_validators", sa.Integer(), nullable=True),
        sa.Column("data_source", sa.String(50), server_default="blockchain", nullable=False),
        sa.Column("collection_status", sa.String(20), server_default="success", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("timestamp", name="unique_timestamp"),
    )
    op.create_index("idx_time_series_timestamp", "time_series_data", [sa.text("timestamp DESC")])
    op.create_index("idx_time_series_tvl", "time_series_data", ["tvl_usd"])
    op.create_index("idx_time_series_peg", "time_series_data", ["peg_deviation_percent"])

    # Whale wallets
    op.create_table(
        "whale_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_balance_eeth", sa.Numeric(20, 8), nullable=True),
        sa.Column("current_balance_usd", sa.Numeric(20, 2), nullable=True),
        sa.Column("balance_24h_ago", sa.Numeric(20, 8), nullable=True),
        sa.Column("balance_7d_ago", sa.Numeric(20, 8), nullable=True),
        sa.Column("balance_30d_ago", sa.Numeric(20, 8), nullable=True),
        sa.Column("change_24h_eeth", sa.Numeric(20, 8), nullable=True),
        sa.Column("change_24h_percent", sa.Numeric(10, 4), nullable=True),
        sa.Column("change_7d_eeth", sa.Numeric(20, 8), nullable=True),
        sa.Column("change_7d_percent", sa.Numeric(10, 4), nullable=True),
        sa.Column("total_deposits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_withdrawals", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_transaction_hash", sa.String(66), nullable=True),
        sa.Column("last_transaction_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rank_position", sa.Integer(), nullable=True),
        sa.Column("label", sa.String(100), nullable=True),
        sa.Column("is_contract", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_exchange", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address", name="unique_address"),
    )
    op.create_index("idx_whale_address", "whale_wallets", ["address"])
    op.create_index("idx_whale_balance", "whale_wallets", [sa.text("current_balance_eeth DESC")])
    op.create_index("idx_whale_rank", "whale_wallets", ["rank_position"])
    op.create_index("idx_whale_change", "whale_wallets", [sa.text("change_24h_percent DESC")])

    # Anomalies
    op.create_table(
        "anomalies",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("anomaly_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("recommendation", sa.Text(), nullable=True),
        sa.Column("affected_metrics", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("baseline_data", postgresql.JSONB(), nullable=True),
        sa.Column("recent_data", postgresql.JSONB(), nullable=True),
        sa.Column("statistical_significance", sa.Numeric(10, 6), nullable=True),
        sa.Column("historical_comparison", sa.Text(), nullable=True),
        sa.Column("similar_past_events", postgresql.JSONB(), nullable=True),
        sa.Column("ai_prompt", sa.Text(), nullable=True),
        sa.Column("ai_response", postgresql.JSONB(), nullable=True),
        sa.Column("analysis_duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("user_acknowledged", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("user_notes", sa.Text(), nullable=True),
        sa.Column("view_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_anomaly_detected_at", "anomalies", [sa.text("detected_at DESC")])
    op.create_index("idx_anomaly_type", "anomalies", ["anomaly_type"])
    op.create_index("idx_anomaly_severity", "anomalies", ["severity"])
    op.create_index("idx_anomaly_status", "anomalies", ["status"])
    op.create_index("idx_anomaly_confidence", "anomalies", [sa.text("confidence DESC")])

    # Sentiment samples
    op.create_table(
        "twitter_sentiment",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tweet_id", sa.String(100), nullable=False),
        sa.Column("tweet_text", sa.Text(), nullable=True),
        sa.Column("author_username", sa.String(100), nullable=True),
        sa.Column("author_followers", sa.Integer(), nullable=True),
        sa.Column("sentiment_score", sa.Numeric(3, 2), nullable=True),
        sa.Column("sentiment_label", sa.String(20), nullable=True),
        sa.Column("confidence", sa.Numeric(3, 2), nullable=True),
        sa.Column("retweet_count", sa.Integer(), nullable=True),
        sa.Column("like_count", sa.Integer(), nullable=True),
        sa.Column("reply_count", sa.Integer(), nullable=True),
        sa.Column("keywords", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("is_influential", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tweet_id", name="unique_tweet"),
    )
    op.create_index("idx_sentiment_timestamp", "twitter_sentiment", [sa.text("timestamp DESC")])
    op.create_index("idx_sentiment_score", "twitter_sentiment", ["sentiment_score"])
    op.create_index("idx_sentiment_label", "twitter_sentiment", ["sentiment_label"])

    # Validator snapshots
    op.create_table(
        "validator_metrics",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_validators", sa.Integer(), nullable=True),
        sa.Column("active_validators", sa.Integer(), nullable=True),
        sa.Column("exited_validators", sa.Integer(), nullable=True),
        sa.Column("slashed_validators", sa.Integer(), nullable=True),
        sa.Column("avg_effectiveness", sa.Numeric(5, 4), nullable=True),
        sa.Column("total_rewards_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("total_penalties_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("net_rewards_eth", sa.Numeric(20, 8), nullable=True),
        sa.Column("estimated_apr", sa.Numeric(10, 4), nullable=True),
        sa.Column("estimated_apy", sa.Numeric(10, 4), nullable=True),
        sa.Column("etherfi_apr", sa.Numeric(10, 4), nullable=True),
        sa.Column("network_avg_apr", sa.Numeric(10, 4), nullable=True),
        sa.Column("apr_vs_network", sa.Numeric(10, 4), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("timestamp", name="unique_validator_timestamp"),
    )
    op.create_index("idx_validator_timestamp", "validator_metrics", [sa.text("timestamp DESC")])

    for name in VIEWS:
        op.execute(create_view_sql(name, "postgresql"))
    op.execute(CLEANUP_ROUTINE)


def downgrade() -> None:
    op.execute(f"DROP FUNCTION IF EXISTS {CLEANUP_ROUTINE_NAME}()")
    for name in VIEWS:
        op.execute(f"DROP VIEW IF EXISTS {name}")

    op.drop_table("validator_metrics")
    op.drop_table("twitter_sentiment")
    op.drop_table("anomalies")
    op.drop_table("whale_wallets")
    op.drop_table("time_series_data")

"""Tests for schema creation and the derived views."""

import pytest

from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.pool import ConnectionPool
from etherfi_monitor.storage.schema import (
    CLEANUP_ROUTINE,
    VIEWS,
    create_view_sql,
    drop_schema,
    init_schema,
)

TABLES = {"time_series_data", "whale_wallets", "anomalies", "twitter_sentiment", "validator_metrics"}


async def sqlite_objects(executor: QueryExecutor, kind: str) -> set[str]:
    rows = await executor.execute(
        "SELECT name FROM sqlite_master WHERE type = :kind", {"kind": kind}
    )
    return {r["name"] for r in rows}


class TestCreateViewSql:
    """Tests for dialect-specific view DDL."""

    def test_postgresql_replaces(self) -> None:
        sql = create_view_sql("active_anomalies", "postgresql")
        assert sql.startswith("CREATE OR REPLACE VIEW active_anomalies AS")
        assert "WHERE status = 'active'" in sql

    def test_sqlite_if_not_exists(self) -> None:
        sql = create_view_sql("latest_metrics", "sqlite")
        assert sql.startswith("CREATE VIEW IF NOT EXISTS latest_metrics AS")
        assert "LIMIT 1" in sql

    def test_latest_metrics_carries_status_columns(self) -> None:
        sql = create_view_sql("latest_metrics", "postgresql")
        for name in ("id", "data_source", "collection_status"):
            assert name in sql

    def test_whale_view_threshold(self) -> None:
        assert "ABS(change_24h_percent) > 5" in create_view_sql("recent_whale_movements", "sqlite")

    def test_unknown_view(self) -> None:
        with pytest.raises(KeyError):
            create_view_sql("nope", "sqlite")

    def test_cleanup_routine_windows(self) -> None:
        assert "INTERVAL '90 days'" in CLEANUP_ROUTINE
        assert "INTERVAL '60 days'" in CLEANUP_ROUTINE
        assert "status = 'resolved'" in CLEANUP_ROUTINE


class TestInitSchema:
    """Tests for init_schema / drop_schema on SQLite."""

    @pytest.mark.asyncio
    async def test_creates_tables_and_views(self, executor: QueryExecutor) -> None:
        assert TABLES <= await sqlite_objects(executor, "table")
        assert set(VIEWS) <= await sqlite_objects(executor, "view")

    @pytest.mark.asyncio
    async def test_idempotent(self, pool: ConnectionPool, executor: QueryExecutor) -> None:
        await init_schema(pool, seed_initial=False)
        await init_schema(pool, seed_initial=False)
        assert TABLES <= await sqlite_objects(executor, "table")

    @pytest.mark.asyncio
    async def test_seed_row(self, pool: ConnectionPool, executor: QueryExecutor) -> None:
        await init_schema(pool, seed_initial=True)

        rows = await executor.execute(
            "SELECT collection_status, tvl_usd, unique_stakers FROM time_series_data"
        )

        assert len(rows) == 1
        assert rows.first() == {"collection_status": "initial", "tvl_usd": 0, "unique_stakers": 0}

    @pytest.mark.asyncio
    async def test_drop_schema(self, pool: ConnectionPool, executor: QueryExecutor) -> None:
        await drop_schema(pool)

        assert not TABLES & await sqlite_objects(executor, "table")
        assert not set(VIEWS) & await sqlite_objects(executor, "view")

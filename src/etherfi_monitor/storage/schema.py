"""Schema creation: tables, derived read views and the maintenance routine.

Production databases are migrated with Alembic (see ``alembic/``); this
module creates the same objects directly for local runs and tests.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import column, table, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import Executable, TableClause

from etherfi_monitor.storage.errors import SchemaInitError, StorageError
from etherfi_monitor.storage.models import (
    AnomalyModel,
    Base,
    CollectionStatus,
    TimeSeriesDataModel,
    WhaleWalletModel,
)
from etherfi_monitor.storage.pool import ConnectionPool

logger = logging.getLogger(__name__)

# Movement (in percent over 24h) above which a whale shows up in recent_whale_movements.
WHALE_MOVEMENT_THRESHOLD_PERCENT = 5

LATEST_METRICS_COLUMNS = (
    "timestamp",
    "tvl_usd",
    "tvl_eth",
    "unique_stakers",
    "withdrawal_queue_size",
    "eeth_eth_price_ratio",
    "peg_deviation_percent",
    "total_volume_eth_24h",
    "avg_gas_price_gwei",
    "id",
    "data_source",
    "collection_status",
)

ACTIVE_ANOMALIES_COLUMNS = (
    "id",
    "detected_at",
    "anomaly_type",
    "severity",
    "confidence",
    "title",
    "description",
    "affected_metrics",
    "recommendation",
    "view_count",
    "last_viewed_at",
)

RECENT_WHALE_MOVEMENTS_COLUMNS = (
    "address",
    "label",
    "current_balance_eeth",
    "change_24h_eeth",
    "change_24h_percent",
    "last_transaction_time",
    "rank_position",
)

LATEST_METRICS_VIEW = """
SELECT {columns}
FROM time_series_data
ORDER BY timestamp DESC
LIMIT 1
"""

ACTIVE_ANOMALIES_VIEW = """
SELECT {columns}
FROM anomalies
WHERE status = 'active'
ORDER BY
    CASE severity
        WHEN 'CRITICAL' THEN 1
        WHEN 'HIGH' THEN 2
        WHEN 'MEDIUM' THEN 3
        WHEN 'LOW' THEN 4
    END,
    detected_at DESC
"""

RECENT_WHALE_MOVEMENTS_VIEW = f"""
SELECT {{columns}}
FROM whale_wallets
WHERE ABS(change_24h_percent) > {WHALE_MOVEMENT_THRESHOLD_PERCENT}
ORDER BY ABS(change_24h_percent) DESC
"""

VIEWS: dict[str, tuple[str, tuple[str, ...]]] = {
    "latest_metrics": (LATEST_METRICS_VIEW, LATEST_METRICS_COLUMNS),
    "active_anomalies": (ACTIVE_ANOMALIES_VIEW, ACTIVE_ANOMALIES_COLUMNS),
    "recent_whale_movements": (RECENT_WHALE_MOVEMENTS_VIEW, RECENT_WHALE_MOVEMENTS_COLUMNS),
}


def _view_table(name: str, model: type[Base], columns: tuple[str, ...]) -> TableClause:
    source = model.__table__.c
    return table(name, *(column(c, source[c].type) for c in columns))


# Typed handles for selecting from the views with SQLAlchemy Core.
latest_metrics_view = _view_table("latest_metrics", TimeSeriesDataModel, LATEST_METRICS_COLUMNS)
active_anomalies_view = _view_table("active_anomalies", AnomalyModel, ACTIVE_ANOMALIES_COLUMNS)
recent_whale_movements_view = _view_table(
    "recent_whale_movements", WhaleWalletModel, RECENT_WHALE_MOVEMENTS_COLUMNS
)

CLEANUP_ROUTINE_NAME = "cleanup_old_data"

# Same windows as etherfi_monitor.storage.retention.RETENTION_WINDOWS.
CLEANUP_ROUTINE = """
CREATE OR REPLACE FUNCTION cleanup_old_data()
RETURNS void AS $$
BEGIN
    DELETE FROM time_series_data
    WHERE timestamp < NOW() - INTERVAL '90 days';

    DELETE FROM twitter_sentiment
    WHERE timestamp < NOW() - INTERVAL '60 days';

    DELETE FROM anomalies
    WHERE status = 'resolved'
    AND resolved_at < NOW() - INTERVAL '90 days';

    DELETE FROM validator_metrics
    WHERE timestamp < NOW() - INTERVAL '90 days';
END;
$$ LANGUAGE plpgsql;
"""


def create_view_sql(name: str, dialect_name: str) -> str:
    """CREATE VIEW statement for one of the derived views on the given dialect."""
    template, columns = VIEWS[name]
    body = template.format(columns=",\n    ".join(columns)).strip()
    if dialect_name == "postgresql":
        return f"CREATE OR REPLACE VIEW {name} AS\n{body}"
    return f"CREATE VIEW IF NOT EXISTS {name} AS\n{body}"


async def _create_all(conn: AsyncConnection, *, seed_initial: bool) -> None:
    dialect_name = conn.dialect.name

    await conn.run_sync(Base.metadata.create_all)
    for name in VIEWS:
        await conn.execute(text(create_view_sql(name, dialect_name)))
    if dialect_name == "postgresql":
        await conn.execute(text(CLEANUP_ROUTINE))

    if seed_initial:
        await conn.execute(_initial_snapshot_statement(dialect_name))


def _initial_snapshot_statement(dialect_name: str) -> Executable:
    insert = pg_insert if dialect_name == "postgresql" else sqlite_insert
    stmt = insert(TimeSeriesDataModel).values(
        timestamp=datetime.now(UTC),
        tvl_usd=0,
        tvl_eth=0,
        unique_stakers=0,
        collection_status=CollectionStatus.INITIAL.value,
    )
    return stmt.on_conflict_do_nothing(index_elements=["timestamp"])


async def init_schema(pool: ConnectionPool, *, seed_initial: bool = True) -> None:
    """Create tables, views and the maintenance routine.

    Safe to run against an existing schema: tables and views are created
    only if missing (PostgreSQL views and routine are replaced).

    Args:
        pool: Initialized connection pool.
        seed_initial: Insert the ``initial`` placeholder metric snapshot.

    Raises:
        SchemaInitError: If any object cannot be created.
    """
    logger.info("Initializing database schema...")
    try:
        async with pool.connection() as conn:
            async with conn.begin():
                await _create_all(conn, seed_initial=seed_initial)
    except (sa_exc.SQLAlchemyError, StorageError) as e:
        logger.error("Failed to initialize schema: %s", e)
        raise SchemaInitError(f"Schema initialization failed: {e}") from e
    logger.info("Database schema initialized")


async def drop_schema(pool: ConnectionPool) -> None:
    """Drop views, routine and tables."""
    try:
        async with pool.connection() as conn:
            async with conn.begin():
                for name in VIEWS:
                    await conn.execute(text(f"DROP VIEW IF EXISTS {name}"))
                if conn.dialect.name == "postgresql":
                    await conn.execute(text(f"DROP FUNCTION IF EXISTS {CLEANUP_ROUTINE_NAME}()"))
                await conn.run_sync(Base.metadata.drop_all)
    except (sa_exc.SQLAlchemyError, StorageError) as e:
        raise SchemaInitError(f"Schema teardown failed: {e}") from e
    logger.info("Database schema dropped")

"""Storage fixtures backed by a file-based SQLite database.

A file (not ``:memory:``) is used so every pooled connection sees the same
database.
"""

from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import Mock

import pytest

from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.pool import ConnectionPool, PoolConfig
from etherfi_monitor.storage.schema import init_schema
from etherfi_monitor.storage.transaction import TransactionRunner


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'etherfi.db'}"


@pytest.fixture
def fatal_handler() -> Mock:
    """Stands in for process termination."""
    return Mock()


@pytest.fixture
def pool_events() -> list:
    return []


@pytest.fixture
async def pool(
    database_url: str, fatal_handler: Mock, pool_events: list
) -> AsyncIterator[ConnectionPool]:
    """Initialized pool with the schema created (no seed row)."""
    pool = ConnectionPool(
        database_url,
        PoolConfig(min_size=1, max_size=5, connection_timeout=2.0),
        observer=pool_events.append,
        on_fatal=fatal_handler,
    )
    await pool.init()
    await init_schema(pool, seed_initial=False)
    yield pool
    await pool.shutdown(timeout=1.0)


@pytest.fixture
def executor(pool: ConnectionPool) -> QueryExecutor:
    return QueryExecutor(pool)


@pytest.fixture
def transactions(pool: ConnectionPool) -> TransactionRunner:
    return TransactionRunner(pool)

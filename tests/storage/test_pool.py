"""Tests for the bounded connection pool."""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from sqlalchemy import text

from etherfi_monitor.storage.errors import PoolClosedError, PoolTimeoutError
from etherfi_monitor.storage.executor import QueryExecutor
from etherfi_monitor.storage.pool import ConnectionPool, PoolConfig, PoolEvent, _connect_args

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def small_pool(tmp_path: Path, pool_events: list, fatal_handler: Mock):
    """Pool limited to two connections with a short acquire timeout."""
    pool = ConnectionPool(
        f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}",
        PoolConfig(min_size=1, max_size=2, connection_timeout=0.2),
        observer=pool_events.append,
        on_fatal=fatal_handler,
    )
    await pool.init()
    yield pool
    await pool.shutdown(timeout=1.0)


# ============================================================================
# PoolConfig Tests
# ============================================================================


class TestPoolConfig:
    """Tests for PoolConfig validation and defaults."""

    def test_defaults(self) -> None:
        config = PoolConfig()
        assert config.min_size == 2
        assert config.max_size == 20
        assert config.idle_timeout == 30.0
        assert config.connection_timeout == 5.0
        assert config.max_uses_per_connection == 7500
        assert config.statement_timeout == 30.0

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(ValueError, match="min_size"):
            PoolConfig(min_size=5, max_size=2)

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ValueError, match="connection_timeout"):
            PoolConfig(connection_timeout=0)

    def test_asyncpg_connect_args(self) -> None:
        args = _connect_args(
            "postgresql+asyncpg://u:p@localhost/db",
            PoolConfig(statement_timeout=12.5, query_timeout=20),
            ssl=True,
        )
        assert args["server_settings"] == {"statement_timeout": "12500"}
        assert args["command_timeout"] == 20
        assert args["timeout"] == 5.0
        assert args["ssl"] == "require"

    def test_sqlite_has_no_connect_args(self) -> None:
        assert _connect_args("sqlite+aiosqlite:///x.db", PoolConfig(), ssl=True) == {}


# ============================================================================
# Acquire / release
# ============================================================================


class TestConnectionPoolBounds:
    """Tests for the max-size bound and acquire timeout."""

    @pytest.mark.asyncio
    async def test_third_acquire_times_out(self, small_pool: ConnectionPool) -> None:
        first = await small_pool.acquire()
        second = await small_pool.acquire()
        try:
            with pytest.raises(PoolTimeoutError):
                await small_pool.acquire()
            assert small_pool.stats().checked_out == 2
        finally:
            await small_pool.release(first)
            await small_pool.release(second)

    @pytest.mark.asyncio
    async def test_blocked_acquire_proceeds_after_release(
        self, small_pool: ConnectionPool
    ) -> None:
        first = await small_pool.acquire()
        second = await small_pool.acquire()

        waiter = asyncio.create_task(small_pool.acquire())
        await asyncio.sleep(0.05)
        assert not waiter.done()

        await small_pool.release(first)
        third = await asyncio.wait_for(waiter, timeout=1.0)

        assert small_pool.stats().live <= 2
        await small_pool.release(second)
        await small_pool.release(third)
        assert small_pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_release_twice_is_noop(self, small_pool: ConnectionPool) -> None:
        conn = await small_pool.acquire()
        await small_pool.release(conn)
        await small_pool.release(conn)
        assert small_pool.in_flight == 0

    @pytest.mark.asyncio
    async def test_connection_context_releases_on_error(self, small_pool: ConnectionPool) -> None:
        with pytest.raises(RuntimeError):
            async with small_pool.connection():
                raise RuntimeError("boom")
        assert small_pool.in_flight == 0


# ============================================================================
# Shutdown
# ============================================================================


class TestConnectionPoolShutdown:
    """Tests for draining and closing."""

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight(
        self, small_pool: ConnectionPool, pool_events: list
    ) -> None:
        conn = await small_pool.acquire()

        async def release_later() -> None:
            await asyncio.sleep(0.05)
            await small_pool.release(conn)

        releaser = asyncio.create_task(release_later())
        await small_pool.shutdown(timeout=1.0)
        await releaser

        assert releaser.done()
        assert not small_pool.is_open
        assert any(e.kind == "close" for e in pool_events)

    @pytest.mark.asyncio
    async def test_concurrent_shutdowns_close_once(
        self, small_pool: ConnectionPool, pool_events: list
    ) -> None:
        conn = await small_pool.acquire()

        async def release_later() -> None:
            await asyncio.sleep(0.05)
            await small_pool.release(conn)

        results = await asyncio.gather(
            small_pool.shutdown(timeout=1.0),
            small_pool.shutdown(timeout=1.0),
            release_later(),
        )

        assert results == [None, None, None]
        assert [e.kind for e in pool_events].count("close") == 1
        assert not small_pool.is_open

    @pytest.mark.asyncio
    async def test_acquire_after_shutdown_fails(self, small_pool: ConnectionPool) -> None:
        await small_pool.shutdown()
        with pytest.raises(PoolClosedError):
            await small_pool.acquire()


# ============================================================================
# Retirement and fatal errors
# ============================================================================


class TestConnectionRetirement:
    """Tests for max-uses eviction and idle failure handling."""

    @pytest.mark.asyncio
    async def test_connection_retired_after_max_uses(
        self, tmp_path: Path, fatal_handler: Mock
    ) -> None:
        events: list[PoolEvent] = []
        pool = ConnectionPool(
            f"sqlite+aiosqlite:///{tmp_path / 'uses.db'}",
            PoolConfig(min_size=1, max_size=1, max_uses_per_connection=2),
            observer=events.append,
            on_fatal=fatal_handler,
        )
        await pool.init()
        try:
            executor = QueryExecutor(pool)
            for _ in range(4):
                assert (await executor.execute("SELECT 1 AS one")).scalar() == 1
        finally:
            await pool.shutdown(timeout=1.0)

        evictions = [e for e in events if e.kind == "evict"]
        assert evictions
        assert "statements" in evictions[0].detail
        fatal_handler.assert_not_called()

    def test_idle_connection_failure_is_fatal(self, fatal_handler: Mock) -> None:
        events: list[PoolEvent] = []
        pool = ConnectionPool(
            "sqlite+aiosqlite:///unused.db", observer=events.append, on_fatal=fatal_handler
        )
        record = SimpleNamespace(info={"etherfi_in_use": False})
        error = OSError("connection reset")

        pool._on_invalidate(None, record, error)

        fatal_handler.assert_called_once_with(error)
        assert events[-1].kind == "error"
        assert events[-1].error is error

    def test_in_use_connection_failure_is_not_fatal(self, fatal_handler: Mock) -> None:
        events: list[PoolEvent] = []
        pool = ConnectionPool(
            "sqlite+aiosqlite:///unused.db", observer=events.append, on_fatal=fatal_handler
        )
        record = SimpleNamespace(info={"etherfi_in_use": True})

        pool._on_invalidate(None, record, OSError("reset"))

        fatal_handler.assert_not_called()
        assert events[-1].kind == "error"

    def test_retiring_connection_is_not_fatal(self, fatal_handler: Mock) -> None:
        pool = ConnectionPool("sqlite+aiosqlite:///unused.db", on_fatal=fatal_handler)
        record = SimpleNamespace(info={"etherfi_in_use": False, "etherfi_retiring": True})

        pool._on_invalidate(None, record, RuntimeError("retired"))

        fatal_handler.assert_not_called()
        assert "etherfi_retiring" not in record.info


# ============================================================================
# Idle reaper
# ============================================================================


class TestIdleReaper:
    """Tests for closing connections that sit idle in the pool."""

    @pytest.mark.asyncio
    async def test_idle_connections_closed_down_to_min_size(
        self, tmp_path: Path, fatal_handler: Mock
    ) -> None:
        events: list[PoolEvent] = []
        pool = ConnectionPool(
            f"sqlite+aiosqlite:///{tmp_path / 'idle.db'}",
            PoolConfig(min_size=1, max_size=3, idle_timeout=0.1, connection_timeout=1.0),
            observer=events.append,
            on_fatal=fatal_handler,
        )
        await pool.init()
        try:
            conns = [await pool.acquire() for _ in range(3)]
            assert pool.stats().live == 3
            for conn in conns:
                await pool.release(conn)

            await asyncio.sleep(0.5)

            evictions = [e for e in events if e.kind == "evict"]
            assert len(evictions) == 2
            assert all("idle" in e.detail for e in evictions)
            stats = pool.stats()
            assert stats.live == 1
            assert stats.idle == 1

            # A reaped slot reconnects on demand.
            async with pool.connection() as conn:
                assert (await conn.execute(text("SELECT 1"))).scalar() == 1
        finally:
            await pool.shutdown(timeout=1.0)

        fatal_handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_checked_out_connection_is_never_reaped(
        self, tmp_path: Path, fatal_handler: Mock
    ) -> None:
        events: list[PoolEvent] = []
        pool = ConnectionPool(
            f"sqlite+aiosqlite:///{tmp_path / 'held.db'}",
            PoolConfig(min_size=0, max_size=2, idle_timeout=0.05),
            observer=events.append,
            on_fatal=fatal_handler,
        )
        await pool.init()
        try:
            conn = await pool.acquire()
            await asyncio.sleep(0.2)

            assert await pool.reap_idle() == 0
            assert (await conn.execute(text("SELECT 1"))).scalar() == 1
            assert not [e for e in events if e.kind == "evict"]
            await pool.release(conn)
        finally:
            await pool.shutdown(timeout=1.0)

    @pytest.mark.asyncio
    async def test_fresh_connections_are_kept(self, small_pool: ConnectionPool) -> None:
        async with small_pool.connection():
            pass
        assert await small_pool.reap_idle() == 0
        assert small_pool.stats().live == 1

    @pytest.mark.asyncio
    async def test_reaper_stops_on_shutdown(self, small_pool: ConnectionPool) -> None:
        reaper = small_pool._reaper
        assert reaper is not None and not reaper.done()

        await small_pool.shutdown(timeout=1.0)

        assert reaper.done()
        assert small_pool._reaper is None

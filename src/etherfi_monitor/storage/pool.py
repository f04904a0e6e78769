"""Bounded connection pool.

Wraps SQLAlchemy's async engine and its ``AsyncAdaptedQueuePool`` with the
lifecycle and retirement rules the storage layer relies on:

- never more than ``max_size`` live connections (no overflow);
- a connection is retired after ``max_uses_per_connection`` statements, or
  after sitting idle longer than ``idle_timeout``, and replaced on checkout;
- a background reaper closes connections idle past ``idle_timeout``, keeping
  at least ``min_size`` open;
- an unexpected failure of a connection that is idle in the pool is fatal;
- ``shutdown()`` drains checked-out connections before disposing the engine.

Lifecycle events are sent to an injected observer. The default observer
only logs them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, ConnectionPoolEntry
from sqlalchemy.util import greenlet_spawn

from etherfi_monitor.storage.errors import (
    DatabaseConnectionError,
    PoolClosedError,
    PoolTimeoutError,
)

logger = logging.getLogger(__name__)

PoolEventKind = Literal["connect", "evict", "error", "close"]

# Keys stored in each connection record's ``info`` dict.
_USES = "etherfi_uses"
_IDLE_SINCE = "etherfi_idle_since"
_IN_USE = "etherfi_in_use"
_RETIRING = "etherfi_retiring"


@dataclass(frozen=True)
class PoolConfig:
    """Connection pool bounds and timeouts (seconds)."""

    min_size: int = 2
    max_size: int = 20
    idle_timeout: float = 30.0
    connection_timeout: float = 5.0
    max_uses_per_connection: int = 7500
    statement_timeout: float = 30.0
    query_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be >= 1")
        if not 0 <= self.min_size <= self.max_size:
            raise ValueError("min_size must be between 0 and max_size")
        if self.max_uses_per_connection < 1:
            raise ValueError("max_uses_per_connection must be >= 1")
        for name in ("idle_timeout", "connection_timeout", "statement_timeout", "query_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class PoolEvent:
    """A pool lifecycle event."""

    kind: PoolEventKind
    detail: str = ""
    error: BaseException | None = None


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool counters."""

    max_size: int
    live: int
    checked_out: int
    idle: int
    in_flight: int


PoolObserver = Callable[[PoolEvent], None]
FatalHandler = Callable[[BaseException], None]


def log_pool_event(pool_event: PoolEvent) -> None:
    """Default observer: forward pool events to the module logger."""
    if pool_event.kind == "error":
        logger.error("Pool error: %s (%s)", pool_event.detail, pool_event.error)
    elif pool_event.kind == "evict":
        logger.info("Connection retired: %s", pool_event.detail)
    else:
        logger.debug("Pool %s: %s", pool_event.kind, pool_event.detail)


def terminate_process(error: BaseException) -> None:
    """Default fatal handler: a half-broken pool must not keep serving reads."""
    logger.critical("Unexpected error on idle database connection, terminating: %s", error)
    logging.shutdown()
    os._exit(1)


def _connect_args(database_url: str, config: PoolConfig, ssl: bool) -> dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() != "postgresql" or url.get_driver_name() != "asyncpg":
        return {}

    args: dict[str, Any] = {
        "timeout": config.connection_timeout,
        "command_timeout": config.query_timeout,
        "server_settings": {
            "statement_timeout": str(int(config.statement_timeout * 1000)),
        },
    }
    if ssl:
        args["ssl"] = "require"
    return args


class ConnectionPool:
    """Owns a bounded set of database connections.

    Example:
        ```python
        pool = ConnectionPool("postgresql+asyncpg://...", PoolConfig(max_size=10))
        await pool.init()
        async with pool.connection() as conn:
            ...
        await pool.shutdown()
        ```
    """

    def __init__(
        self,
        database_url: str,
        config: PoolConfig | None = None,
        *,
        observer: PoolObserver | None = None,
        on_fatal: FatalHandler | None = None,
        ssl: bool = False,
        echo: bool = False,
    ) -> None:
        """Initialize the pool. No connection is opened until ``init()``.

        Args:
            database_url: Async SQLAlchemy URL (``postgresql+asyncpg://`` or
                ``sqlite+aiosqlite://``).
            config: Pool bounds and timeouts.
            observer: Receives connect/evict/error/close events.
            on_fatal: Called when an idle connection fails unexpectedly.
                Defaults to terminating the process.
            ssl: Require TLS for PostgreSQL connections.
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self.config = config or PoolConfig()
        self._observer = observer or log_pool_event
        self._on_fatal = on_fatal or terminate_process
        self._ssl = ssl
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._closing = False
        self._pending = 0
        self._checked_out: set[AsyncConnection] = set()
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutdown_lock = asyncio.Lock()
        self._reaper: asyncio.Task[None] | None = None
        # Every pool slot that has ever held a connection.
        self._records: set[ConnectionPoolEntry] = set()

    @property
    def engine(self) -> AsyncEngine:
        """The underlying async engine."""
        if self._engine is None:
            raise PoolClosedError("Connection pool is not initialized")
        return self._engine

    @property
    def dialect_name(self) -> str:
        """SQL dialect of the connected database (e.g. ``postgresql``, ``sqlite``)."""
        return self.engine.dialect.name

    @property
    def is_open(self) -> bool:
        return self._engine is not None and not self._closing

    @property
    def in_flight(self) -> int:
        """Connections checked out or being acquired."""
        return self._pending + len(self._checked_out)

    async def init(self) -> None:
        """Create the engine and open ``min_size`` connections.

        Raises:
            DatabaseConnectionError: If the warm-up connections cannot be opened.
        """
        if self._engine is not None:
            return

        self._closing = False
        engine = create_async_engine(
            self.database_url,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self.config.max_size,
            max_overflow=0,
            pool_timeout=self.config.connection_timeout,
            pool_pre_ping=True,
            connect_args=_connect_args(self.database_url, self.config, self._ssl),
            echo=self._echo,
        )
        self._register_events(engine)
        self._engine = engine

        try:
            await self._warm_up()
        except BaseException:
            self._engine = None
            await engine.dispose()
            raise

        self._reaper = asyncio.create_task(self._reap_periodically())
        logger.info(
            "Connection pool ready (min=%d, max=%d)",
            self.config.min_size,
            self.config.max_size,
        )

    async def _warm_up(self) -> None:
        conns: list[AsyncConnection] = []
        try:
            for _ in range(self.config.min_size):
                conns.append(await self.acquire())
        finally:
            for conn in conns:
                await self.release(conn)

    async def acquire(self) -> AsyncConnection:
        """Check out a connection.

        Blocks while all ``max_size`` connections are in use, up to
        ``connection_timeout``.

        Raises:
            PoolClosedError: If the pool is shutting down or not initialized.
            PoolTimeoutError: If no connection frees up in time.
            DatabaseConnectionError: If a new connection cannot be opened.
        """
        if self._closing or self._engine is None:
            raise PoolClosedError("Connection pool is closed")

        self._pending += 1
        self._drained.clear()
        try:
            conn = await self._engine.connect()
        except sa_exc.TimeoutError as e:
            raise PoolTimeoutError(
                f"No database connection available within {self.config.connection_timeout}s"
            ) from e
        except (sa_exc.SQLAlchemyError, OSError) as e:
            raise DatabaseConnectionError(f"Could not connect to database: {e}") from e
        else:
            self._checked_out.add(conn)
            return conn
        finally:
            self._pending -= 1
            self._update_drained()

    async def release(self, conn: AsyncConnection) -> None:
        """Return a connection to the pool. Releasing twice is a no-op."""
        if conn not in self._checked_out:
            return
        try:
            await conn.close()
        finally:
            self._checked_out.discard(conn)
            self._update_drained()

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[AsyncConnection, None]:
        """Check out a connection for the duration of the block."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop handing out connections, drain in-flight work, close everything.

        Args:
            timeout: Maximum seconds to wait for checked-out connections to
                be released. ``None`` waits indefinitely.
        """
        async with self._shutdown_lock:
            # A concurrent caller may have finished the shutdown while we waited.
            if self._engine is None:
                return

            self._closing = True
            await self._stop_reaper()
            if not self._drained.is_set():
                logger.info(
                    "Waiting for %d in-flight connection(s) to be released", self.in_flight
                )
                try:
                    await asyncio.wait_for(self._drained.wait(), timeout)
                except TimeoutError:
                    logger.warning(
                        "Drain timed out with %d connection(s) still in use; closing anyway",
                        self.in_flight,
                    )

            engine = self._engine
            self._engine = None
            await engine.dispose()
            self._records.clear()
            self._observer(PoolEvent("close", "all connections closed"))
            logger.info("Database connection pool closed")

    def stats(self) -> PoolStats:
        """Current pool counters."""
        pool: Any = self.engine.sync_engine.pool
        checked_out = pool.checkedout()
        live = sum(1 for record in self._records if record.dbapi_connection is not None)
        return PoolStats(
            max_size=self.config.max_size,
            live=live,
            checked_out=checked_out,
            idle=max(live - checked_out, 0),
            in_flight=self.in_flight,
        )

    async def reap_idle(self) -> int:
        """Close connections idle longer than ``idle_timeout``.

        Oldest idle connections go first, and at least ``min_size`` stay
        open. A reaped slot reconnects on its next checkout.

        Returns:
            Number of connections closed.
        """
        if self._engine is None or self._closing or self._pending:
            # An acquire in progress may hold a slot that is not yet marked in use.
            return 0

        now = time.monotonic()
        live = [r for r in self._records if r.dbapi_connection is not None]
        expired = sorted(
            (
                r
                for r in live
                if not r.info.get(_IN_USE)
                and now - r.info.get(_IDLE_SINCE, now) > self.config.idle_timeout
            ),
            key=lambda r: r.info.get(_IDLE_SINCE, now),
        )
        excess = max(len(live) - self.config.min_size, 0)

        # Detach before the first await so no checkout can hand these out.
        detached = []
        for record in expired[:excess]:
            idle_for = now - record.info.get(_IDLE_SINCE, now)
            detached.append(record.dbapi_connection)
            record.dbapi_connection = None
            self._observer(PoolEvent("evict", f"idle for {idle_for:.1f}s"))

        dialect = self._engine.sync_engine.dialect
        for dbapi_connection in detached:
            try:
                await greenlet_spawn(dialect.do_close, dbapi_connection)
            except Exception as e:
                logger.warning("Error closing idle connection: %s", e)
        return len(detached)

    async def _reap_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.config.idle_timeout)
            try:
                await self.reap_idle()
            except Exception as e:
                logger.error("Idle connection reaper failed: %s", e)

    async def _stop_reaper(self) -> None:
        if self._reaper is None:
            return
        self._reaper.cancel()
        with suppress(asyncio.CancelledError):
            await self._reaper
        self._reaper = None

    def _update_drained(self) -> None:
        if self.in_flight == 0:
            self._drained.set()

    # ------------------------------------------------------------------
    # Pool event hooks (run synchronously inside SQLAlchemy's pool)
    # ------------------------------------------------------------------

    def _register_events(self, engine: AsyncEngine) -> None:
        sync_engine = engine.sync_engine
        event.listen(sync_engine, "connect", self._on_connect)
        event.listen(sync_engine, "checkout", self._on_checkout)
        event.listen(sync_engine, "checkin", self._on_checkin)
        event.listen(sync_engine, "invalidate", self._on_invalidate)
        event.listen(sync_engine, "before_cursor_execute", self._on_before_cursor_execute)

    def _on_connect(self, dbapi_connection: Any, connection_record: Any) -> None:
        info = connection_record.info
        info[_USES] = 0
        info[_IDLE_SINCE] = time.monotonic()
        info[_IN_USE] = False
        info.pop(_RETIRING, None)
        self._records.add(connection_record)
        self._observer(PoolEvent("connect", "new connection established"))

    def _on_checkout(
        self, dbapi_connection: Any, connection_record: Any, connection_proxy: Any
    ) -> None:
        info = connection_record.info
        now = time.monotonic()

        reason: str | None = None
        uses = info.get(_USES, 0)
        if uses >= self.config.max_uses_per_connection:
            reason = f"served {uses} statements"
        else:
            idle_for = now - info.get(_IDLE_SINCE, now)
            if idle_for > self.config.idle_timeout:
                reason = f"idle for {idle_for:.1f}s"

        if reason is not None:
            info[_RETIRING] = True
            self._observer(PoolEvent("evict", reason))
            # The pool invalidates this record and retries with a fresh connection.
            raise sa_exc.DisconnectionError(reason)

        info[_IN_USE] = True

    def _on_checkin(self, dbapi_connection: Any, connection_record: Any) -> None:
        info = connection_record.info
        info[_IN_USE] = False
        info[_IDLE_SINCE] = time.monotonic()

    def _on_invalidate(
        self,
        dbapi_connection: Any,
        connection_record: Any,
        exception: BaseException | None,
    ) -> None:
        info = connection_record.info
        if info.pop(_RETIRING, False) or exception is None:
            return
        if info.get(_IN_USE):
            self._observer(PoolEvent("error", "connection invalidated while in use", exception))
            return

        self._observer(PoolEvent("error", "unexpected error on idle connection", exception))
        self._on_fatal(exception)

    def _on_before_cursor_execute(
        self,
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        info = conn.info
        info[_USES] = info.get(_USES, 0) + 1

"""Command-line host for the storage layer.

Usage:
    python -m etherfi_monitor init-db
    python -m etherfi_monitor cleanup [--server-routine]
    python -m etherfi_monitor maintain [--interval-hours 24]
    python -m etherfi_monitor health
    python -m etherfi_monitor stats

This module owns process concerns: logging setup, signal handling and the
shutdown sequence. SIGINT / SIGTERM set a stop event; the command returns
and the database manager is shut down before the process exits.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict
from typing import Any

from etherfi_monitor.config import Settings, get_settings
from etherfi_monitor.storage import DatabaseManager, StorageError

logger = logging.getLogger("etherfi_monitor")

Command = Callable[[DatabaseManager, argparse.Namespace, asyncio.Event], Awaitable[int]]


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="etherfi-monitor",
        description="ether.fi monitoring database maintenance",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create tables, views and routines")
    init_db.add_argument(
        "--no-seed",
        action="store_true",
        help="Do not insert the initial placeholder metric snapshot",
    )

    cleanup = subparsers.add_parser("cleanup", help="Delete rows past their retention window")
    cleanup.add_argument(
        "--server-routine",
        action="store_true",
        help="Call the PostgreSQL cleanup_old_data() routine instead",
    )

    maintain = subparsers.add_parser("maintain", help="Run cleanup periodically until stopped")
    maintain.add_argument(
        "--interval-hours",
        type=float,
        default=None,
        help="Hours between runs (default: RETENTION_INTERVAL_HOURS)",
    )

    subparsers.add_parser("health", help="Check connectivity and print pool/table status")
    subparsers.add_parser("stats", help="Print row totals and last activity")
    return parser


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _init_db(db: DatabaseManager, args: argparse.Namespace, stop: asyncio.Event) -> int:
    await db.init_schema(seed_initial=not args.no_seed)
    info = await db.test_connection()
    logger.info("Schema ready (server time %s)", info["server_time"])
    return 0


async def _cleanup(db: DatabaseManager, args: argparse.Namespace, stop: asyncio.Event) -> int:
    if args.server_routine:
        await db.retention.run_server_routine()
        return 0
    report = await db.retention.run_cleanup()
    _print_json({"ran_at": report.ran_at, "deleted": report.deleted, "total": report.total})
    return 0


async def _maintain(db: DatabaseManager, args: argparse.Namespace, stop: asyncio.Event) -> int:
    settings = get_settings()
    hours = args.interval_hours or settings.retention.interval_hours
    logger.info("Running retention every %.1f hours", hours)
    await db.retention.run_periodically(hours * 3600, stop, db.retry_policy)
    return 0


async def _health(db: DatabaseManager, args: argparse.Namespace, stop: asyncio.Event) -> int:
    status = await db.health_check()
    _print_json(asdict(status))
    return 0 if status.healthy else 1


async def _stats(db: DatabaseManager, args: argparse.Namespace, stop: asyncio.Event) -> int:
    _print_json(asdict(await db.database_stats()))
    return 0


COMMANDS: dict[str, Command] = {
    "init-db": _init_db,
    "cleanup": _cleanup,
    "maintain": _maintain,
    "health": _health,
    "stats": _stats,
}


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _request_stop, stop, sig)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt.
            pass


def _request_stop(stop: asyncio.Event, sig: signal.Signals) -> None:
    logger.info("Received %s, shutting down", sig.name)
    stop.set()


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Run one command with a started database manager, then shut it down."""
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    db = DatabaseManager.from_settings(settings)
    try:
        await db.start()
        command = asyncio.create_task(COMMANDS[args.command](db, args, stop))
        stopper = asyncio.create_task(stop.wait())
        done, _ = await asyncio.wait({command, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if command not in done:
            command.cancel()
            try:
                await command
            except asyncio.CancelledError:
                pass
            return 130
        stopper.cancel()
        return command.result()
    except StorageError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    finally:
        await db.shutdown(timeout=settings.database.connection_timeout_seconds)


def main(argv: Sequence[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())

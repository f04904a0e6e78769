"""Tests for the command-line host."""

import asyncio
import json
import signal
from pathlib import Path

import pytest

from etherfi_monitor.__main__ import COMMANDS, _request_stop, create_parser, main


@pytest.fixture
def sqlite_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("DB_POOL_MIN", "1")
    monkeypatch.setenv("DB_POOL_MAX", "2")
    return url


class TestParser:
    """Tests for argument parsing."""

    def test_every_command_has_a_handler(self) -> None:
        parser = create_parser()
        for name in COMMANDS:
            assert parser.parse_args([name]).command == name

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_flags(self) -> None:
        parser = create_parser()
        assert parser.parse_args(["init-db", "--no-seed"]).no_seed is True
        assert parser.parse_args(["cleanup", "--server-routine"]).server_routine is True
        assert parser.parse_args(["maintain", "--interval-hours", "6"]).interval_hours == 6.0
        assert parser.parse_args(["maintain"]).interval_hours is None


def test_request_stop_sets_event() -> None:
    stop = asyncio.Event()
    _request_stop(stop, signal.SIGTERM)
    assert stop.is_set()


class TestCommands:
    """End-to-end command runs against SQLite."""

    def test_init_db_then_stats(self, sqlite_env: str, capsys: pytest.CaptureFixture) -> None:
        assert main(["init-db"]) == 0
        capsys.readouterr()

        assert main(["stats"]) == 0
        stats = json.loads(capsys.readouterr().out)

        assert stats["total_data_points"] == 1
        assert stats["total_anomalies"] == 0

    def test_init_db_without_seed(self, sqlite_env: str, capsys: pytest.CaptureFixture) -> None:
        assert main(["init-db", "--no-seed"]) == 0
        capsys.readouterr()

        assert main(["stats"]) == 0
        assert json.loads(capsys.readouterr().out)["total_data_points"] == 0

    def test_cleanup_prints_report(self, sqlite_env: str, capsys: pytest.CaptureFixture) -> None:
        assert main(["init-db"]) == 0
        capsys.readouterr()

        assert main(["cleanup"]) == 0
        report = json.loads(capsys.readouterr().out)

        assert report["total"] == 0
        assert set(report["deleted"]) == {
            "time_series_data",
            "twitter_sentiment",
            "anomalies",
            "validator_metrics",
        }

    def test_server_routine_fails_on_sqlite(self, sqlite_env: str) -> None:
        assert main(["init-db"]) == 0
        assert main(["cleanup", "--server-routine"]) == 1

    def test_health(self, sqlite_env: str, capsys: pytest.CaptureFixture) -> None:
        assert main(["init-db"]) == 0
        capsys.readouterr()

        assert main(["health"]) == 0
        status = json.loads(capsys.readouterr().out)

        assert status["status"] == "healthy"
        assert status["pool"]["max_size"] == 2

"""Tests for the command-line entry point."""

import json

import pytest

from rebalance_indexer import __main__ as cli
from rebalance_indexer.config import Settings


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("BASE_ENABLED", "false")
    monkeypatch.delenv("MONAD_ENABLED", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    settings = Settings()
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    return settings


class TestParser:
    def test_backfill_arguments(self) -> None:
        args = cli.build_parser().parse_args(
            ["backfill", "monad", "--from-block", "10", "--to-block", "20", "--contract", "0xabc"]
        )
        assert args.command == "backfill"
        assert args.chain == "monad"
        assert (args.from_block, args.to_block, args.contract) == (10, 20, "0xabc")
        assert args.drain_timeout == 300.0

    def test_progress_chain_optional(self) -> None:
        args = cli.build_parser().parse_args(["progress"])
        assert args.chain is None

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestMain:
    def test_init_db_then_progress(self, settings, capsys) -> None:
        assert cli.main(["init-db"]) == 0
        assert cli.main(["progress"]) == 0

        rows = json.loads(capsys.readouterr().out)
        assert [(r["chain"], r["chain_id"], r["remaining_blocks"]) for r in rows] == [("monad", 10143, 0)]

    def test_dead_letters_empty(self, settings, capsys) -> None:
        assert cli.main(["init-db"]) == 0
        assert cli.main(["dead-letters", "--chain", "monad"]) == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_unknown_chain_exits_nonzero(self, settings, caplog) -> None:
        assert cli.main(["init-db"]) == 0
        assert cli.main(["progress", "ethereum"]) == 1
        assert "ethereum" in caplog.text

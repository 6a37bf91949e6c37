"""
Unit tests for ToteApp wiring and the command-line entry point.
"""
import asyncio
from decimal import Decimal
from pathlib import Path

import pytest

from tote import __version__
from tote.__main__ import build_config, main, parse_args
from tote.app import ToteApp
from tote.core.config import ConfigManager
from tote.core.lifecycle import HealthStatus
from tote.domain.models import Game, GameStatus, Market, QueueStatus, Side, Trade
from tote.services.ledger_store import LedgerStore


@pytest.fixture
def app_config(tmp_path) -> ConfigManager:
    config = ConfigManager()
    config.set("database.path", str(tmp_path / "app.db"))
    config.set("settlement.fee_rate", "0.05")
    config.set("settlement.worker_id", "app-worker")
    return config


async def seed_final_games(db_path: str, *games: Game) -> None:
    async with LedgerStore(db_path=db_path) as store:
        for game in games:
            await store.upsert_game(game)


async def queued_outcome(db_path: str, game_id: int):
    async with LedgerStore(db_path=db_path) as store:
        item = await store.get_queue_item_for_game(game_id)
        return item.outcome if item else None


class TestToteApp:
    """Component wiring and lifecycle."""

    @pytest.mark.asyncio
    async def test_components_share_config(self, app_config, tmp_path):
        async with ToteApp(app_config, configure_logging=False) as app:
            assert app.store.is_connected
            assert app.store.db_path == str(tmp_path / "app.db")
            assert app.processor.fee_rate == Decimal("0.05")
            assert app.worker.worker_id == "app-worker"
            assert app.metrics is not None

        assert not app.store.is_connected

    @pytest.mark.asyncio
    async def test_metrics_can_be_disabled(self, app_config):
        app_config.set("metrics.enabled", False)

        app = ToteApp(app_config, configure_logging=False)

        assert app.metrics is None

    @pytest.mark.asyncio
    async def test_health(self, app_config):
        async with ToteApp(app_config, configure_logging=False) as app:
            health = await app.health_check()

        assert health.status == HealthStatus.HEALTHY
        assert health.details["store"]["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_end_to_end_settlement(self, app_config):
        async with ToteApp(app_config, configure_logging=False) as app:
            game = await app.store.upsert_game(Game(id=1, league="NFL"))
            await app.store.upsert_market(Market(id="m1", game_id=1, league="NFL", is_locked=True))
            await app.store.record_trade(Trade(user_id="u1", market_id="m1", amount=Decimal("100"), side=Side.HOME))
            await app.store.record_trade(Trade(user_id="u2", market_id="m1", amount=Decimal("100"), side=Side.AWAY))
            await app.queue.enqueue_settlement(game, "HOME")

            batch = await app.worker.process_all_settlements()
            balance = await app.treasury.get_treasury_balance()

        assert batch.succeeded == 1
        assert batch.results[0].total_payout_amount == Decimal("195.00")
        assert balance.total_fees_collected == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_request_shutdown_stops_run_forever(self, app_config):
        app = ToteApp(app_config, configure_logging=False)
        app.request_shutdown()

        await app.run_forever()

        assert not app.is_running
        assert not app.worker.is_running


class TestCommandLine:
    """Argument parsing and commands."""

    def test_parse_global_options(self):
        args = parse_args(["--db", "/tmp/x.db", "--log-level", "DEBUG", "--worker-id", "w9", "settle", "--max-items", "3"])

        assert args.db == "/tmp/x.db"
        assert args.log_level == "DEBUG"
        assert args.worker_id == "w9"
        assert args.command == "settle"
        assert args.max_items == 3

    def test_parse_queue_status_is_case_insensitive(self):
        args = parse_args(["queue", "--status", "failed", "--status", "QUEUED"])

        assert args.status == ["FAILED", "QUEUED"]

    def test_parse_enqueue(self):
        args = parse_args(["enqueue", "12", "--outcome", "AWAY", "--skip"])

        assert args.game_id == 12
        assert args.outcome == "AWAY"
        assert args.skip is True

    def test_build_config_applies_flags(self, tmp_path):
        args = parse_args(["--config", str(tmp_path / "none.toml"), "--db", "/tmp/y.db", "--json-logs", "init-db"])

        config = build_config(args)

        assert config.config_path == Path(tmp_path / "none.toml")
        assert config.get("database.path") == "/tmp/y.db"
        assert config.get_bool("logging.json") is True

    def test_version(self, capsys):
        assert main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_init_db_and_settle(self, tmp_path, capsys):
        db = str(tmp_path / "cli.db")

        assert main(["--db", db, "init-db"]) == 0
        assert main(["--db", db, "settle"]) == 0
        assert (tmp_path / "cli.db").exists()
        assert "Processed: 0" in capsys.readouterr().out

    def test_enqueue_unknown_game_fails(self, tmp_path):
        assert main(["--db", str(tmp_path / "cli.db"), "enqueue", "77"]) == 1

    def test_retry_unknown_item_fails(self, tmp_path):
        assert main(["--db", str(tmp_path / "cli.db"), "retry", "missing"]) == 1

    def test_preview_unknown_game_fails(self, tmp_path, capsys):
        assert main(["--db", str(tmp_path / "cli.db"), "preview", "77"]) == 1
        assert "Game not found" in capsys.readouterr().out

    def test_queue_and_treasury_listing(self, tmp_path, capsys):
        db = str(tmp_path / "cli.db")

        assert main(["--db", db, "queue", "--status", "queued"]) == 0
        assert main(["--db", db, "treasury"]) == 0

        out = capsys.readouterr().out
        assert f"{QueueStatus.QUEUED.value}=0" in out
        assert "Balance: 0" in out

    def test_enqueue_rejects_malformed_outcome(self, tmp_path, capsys):
        db = str(tmp_path / "cli.db")
        asyncio.run(seed_final_games(db, Game(id=5, league="NFL", status=GameStatus.FINAL)))

        assert main(["--db", db, "enqueue", "5", "--outcome", "HOEM"]) == 1

        assert "Malformed outcome" in capsys.readouterr().out
        assert asyncio.run(queued_outcome(db, 5)) is None

    def test_audit_and_enqueue_orphans(self, tmp_path, capsys):
        db = str(tmp_path / "cli.db")
        asyncio.run(seed_final_games(
            db,
            Game(id=1, league="NFL", status=GameStatus.FINAL, home_score=24, away_score=10),
            Game(id=2, league="NFL", status=GameStatus.FINAL),
        ))

        assert main(["--db", db, "audit"]) == 0
        audit_out = capsys.readouterr().out
        assert "Audit: warning" in audit_out
        assert "final_not_queued [warning] count=2" in audit_out
        assert "games: 1, 2" in audit_out

        assert main(["--db", db, "enqueue-orphans"]) == 0
        assert "Enqueued 1 orphaned game(s)" in capsys.readouterr().out
        assert asyncio.run(queued_outcome(db, 1)) == "HOME"
        assert asyncio.run(queued_outcome(db, 2)) is None

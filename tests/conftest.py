"""
Shared pytest fixtures for tote tests.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

import pytest
import pytest_asyncio
from unittest.mock import MagicMock

from tote.domain.models import Game, GameStatus, Market, Side, Trade
from tote.services.ledger_store import LedgerStore
from tote.services.queue import SettlementQueue
from tote.services.settlement import SettlementProcessor

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Seeder:
    """Writes games, markets and trades the way ingestion would."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self._trade_clock = T0

    async def game(
        self,
        game_id: int = 1,
        league: str = "NFL",
        status: GameStatus = GameStatus.FINAL,
        external_game_id: Optional[str] = None,
        winner_side: Optional[str] = None,
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
    ) -> Game:
        game = Game(
            id=game_id,
            league=league,
            status=status,
            external_game_id=external_game_id or f"ext-{game_id}",
            provider="sportsdata",
            winner_side=winner_side,
            home_score=home_score,
            away_score=away_score,
        )
        return await self.store.upsert_game(game)

    async def market(
        self,
        market_id: str,
        game_id: Optional[int] = 1,
        locked: bool = True,
        league: str = "NFL",
        external_game_id: Optional[str] = None,
    ) -> Market:
        market = Market(
            id=market_id,
            title=f"Who wins? ({market_id})",
            game_id=game_id,
            external_game_id=external_game_id if external_game_id else f"ext-{game_id}",
            league=league,
            is_locked=locked,
            lock_reason="GAME_STARTED" if locked else None,
            locked_at=T0 if locked else None,
        )
        return await self.store.upsert_market(market)

    async def trades(self, market_id: str, rows: Sequence[tuple[str, str, str]]) -> list[Trade]:
        """Record (user_id, amount, side) rows one second apart."""
        recorded = []
        for user_id, amount, side in rows:
            self._trade_clock += timedelta(seconds=1)
            trade = Trade(
                user_id=user_id,
                market_id=market_id,
                amount=Decimal(amount),
                side=Side(side),
                created_at=self._trade_clock,
            )
            recorded.append(await self.store.record_trade(trade))
        return recorded


@pytest.fixture
def mock_config():
    """Mock ConfigManager for unit tests."""
    config = MagicMock()
    config.get.return_value = None
    return config


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "tote.db")


@pytest_asyncio.fixture
async def store(db_path):
    """Connected LedgerStore on a temporary file."""
    store = LedgerStore(db_path=db_path)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def queue(store):
    return SettlementQueue(store)


@pytest.fixture
def processor(store, queue):
    return SettlementProcessor(store, queue)

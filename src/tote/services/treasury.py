"""Treasury and preview - read-only settlement reporting.

Nothing here writes. The preview runs the same calculate_settlement the
processor uses, against current trades, so an admin dry run shows exactly
what settlement would do.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from tote.core.config import ConfigManager
from tote.core.errors import DataIntegrityError, GameNotFoundError
from tote.domain.models import (
    CANCELLATION_OUTCOMES,
    Game,
    GameStatus,
    Side,
    TreasuryBalance,
    TreasuryEntry,
    TreasuryEntryType,
)
from tote.services.calculator import FEE_RATE, calculate_settlement
from tote.services.ledger_store import LedgerStore, parse_outcome

log = structlog.get_logger()

UNKNOWN_OUTCOME = "UNKNOWN"
DEFAULT_LEDGER_LIMIT = 50

ZERO = Decimal("0")


def _stored_outcome(value: str) -> Optional[str]:
    try:
        return parse_outcome(value).value
    except DataIntegrityError:
        log.warning("stored_outcome_ignored", outcome=value)
        return None


@dataclass
class PayoutPreview:
    user_id: str
    stake: Decimal
    amount: Decimal

    @property
    def profit(self) -> Decimal:
        return self.amount - self.stake


@dataclass
class MarketPreview:
    """What settling one market would produce right now."""
    market_id: str
    title: str
    market_status: str
    is_locked: bool
    trade_count: int
    gross_pool: Decimal
    home_pool: Decimal
    away_pool: Decimal
    winning_pool: Decimal
    losing_pool: Decimal
    platform_fee: Decimal
    net_distributed: Decimal
    undistributed_amount: Decimal
    total_payouts: Decimal
    total_refunds: Decimal
    payouts: list[PayoutPreview] = field(default_factory=list)
    already_settled: bool = False


@dataclass
class SettlementPreview:
    """Dry-run settlement of one game."""
    game_id: int
    outcome: str
    outcome_source: str
    is_cancellation: bool
    fee_rate: Decimal
    already_settled: bool = False
    markets: list[MarketPreview] = field(default_factory=list)

    @property
    def total_gross(self) -> Decimal:
        return sum((m.gross_pool for m in self.markets), ZERO)

    @property
    def total_fees(self) -> Decimal:
        return sum((m.platform_fee for m in self.markets), ZERO)

    @property
    def total_payouts(self) -> Decimal:
        return sum((m.total_payouts for m in self.markets), ZERO)

    @property
    def total_refunds(self) -> Decimal:
        return sum((m.total_refunds for m in self.markets), ZERO)


class TreasuryService:
    """Read-side reporting over settlement data.

    Usage:
        treasury = TreasuryService(store)
        preview = await treasury.preview_settlement(game_id)
        balance = await treasury.get_treasury_balance()
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[ConfigManager] = None,
        fee_rate: Optional[Decimal] = None,
    ):
        self._store = store
        self._log = log.bind(component="treasury")
        if fee_rate is not None:
            self._fee_rate = Decimal(str(fee_rate))
        elif config is not None:
            self._fee_rate = config.get_decimal("settlement.fee_rate", FEE_RATE)
        else:
            self._fee_rate = FEE_RATE

    async def _resolve_outcome(self, game: Game, outcome: Optional[str]) -> tuple[str, str]:
        """Pick the outcome to preview and say where it came from.

        An explicit outcome must be valid; stored ones that are not are
        passed over.
        """
        if outcome:
            return parse_outcome(outcome).value, "argument"

        item = await self._store.get_queue_item_for_game(game.id)
        if item is not None and item.outcome:
            stored = _stored_outcome(item.outcome)
            if stored:
                return stored, "queue"

        if game.winner_side:
            stored = _stored_outcome(game.winner_side)
            if stored:
                return stored, "game"

        if game.status in (GameStatus.CANCELED, GameStatus.POSTPONED):
            return game.status.value.upper(), "game_status"

        return UNKNOWN_OUTCOME, "unknown"

    async def preview_settlement(
        self,
        game_id: int,
        outcome: Optional[str] = None,
    ) -> SettlementPreview:
        """Compute pools, fees and payouts for a game without writing anything.

        With no resolvable outcome the preview carries only the home, away
        and gross pools; fee and payout figures stay zero.

        Raises:
            GameNotFoundError: game does not exist.
            DataIntegrityError: outcome is given but not one of Outcome.
        """
        game = await self._store.get_game(game_id)
        if game is None:
            raise GameNotFoundError(game_id)

        resolved, source = await self._resolve_outcome(game, outcome)
        preview = SettlementPreview(
            game_id=game.id,
            outcome=resolved,
            outcome_source=source,
            is_cancellation=resolved in CANCELLATION_OUTCOMES,
            fee_rate=self._fee_rate,
            already_settled=game.is_settled,
        )

        for market in await self._store.get_markets_for_game(game):
            trades = await self._store.get_trades_for_market(market.id)
            home_pool = sum((t.amount for t in trades if t.side == Side.HOME), ZERO)
            away_pool = sum((t.amount for t in trades if t.side == Side.AWAY), ZERO)

            if resolved == UNKNOWN_OUTCOME:
                preview.markets.append(
                    MarketPreview(
                        market_id=market.id,
                        title=market.title,
                        market_status=market.market_status.value,
                        is_locked=market.is_locked,
                        trade_count=len(trades),
                        gross_pool=home_pool + away_pool,
                        home_pool=home_pool,
                        away_pool=away_pool,
                        winning_pool=ZERO,
                        losing_pool=ZERO,
                        platform_fee=ZERO,
                        net_distributed=ZERO,
                        undistributed_amount=ZERO,
                        total_payouts=ZERO,
                        total_refunds=ZERO,
                        already_settled=market.is_resolved,
                    )
                )
                continue

            calc = calculate_settlement(trades, resolved, self._fee_rate)
            preview.markets.append(
                MarketPreview(
                    market_id=market.id,
                    title=market.title,
                    market_status=market.market_status.value,
                    is_locked=market.is_locked,
                    trade_count=len(trades),
                    gross_pool=calc.gross_pool,
                    home_pool=home_pool,
                    away_pool=away_pool,
                    winning_pool=calc.winning_pool,
                    losing_pool=calc.losing_pool,
                    platform_fee=calc.platform_fee,
                    net_distributed=calc.net_distributed,
                    undistributed_amount=calc.undistributed_amount,
                    total_payouts=calc.total_payouts,
                    total_refunds=calc.total_refunds,
                    payouts=[
                        PayoutPreview(
                            user_id=user_id,
                            stake=sum((line.stake for line in lines), ZERO),
                            amount=sum((line.amount_cents for line in lines), ZERO),
                        )
                        for user_id, lines in calc.payouts_by_user().items()
                    ],
                    already_settled=market.is_resolved,
                )
            )

        self._log.debug(
            "settlement_previewed",
            game_id=game_id,
            outcome=resolved,
            outcome_source=source,
            markets=len(preview.markets),
        )
        return preview

    async def get_treasury_balance(self) -> TreasuryBalance:
        """Sum the treasury ledger.

        SETTLEMENT_FEE and DEPOSIT add, WITHDRAWAL subtracts its absolute
        amount, ADJUSTMENT adds its signed amount.
        """
        balance = TreasuryBalance()
        for entry in await self._store.get_treasury_entries():
            balance.total_entries += 1
            if balance.last_updated is None or entry.created_at > balance.last_updated:
                balance.last_updated = entry.created_at

            if entry.entry_type == TreasuryEntryType.SETTLEMENT_FEE:
                balance.total_fees_collected += entry.amount
            elif entry.entry_type == TreasuryEntryType.DEPOSIT:
                balance.total_deposits += entry.amount
            elif entry.entry_type == TreasuryEntryType.WITHDRAWAL:
                balance.total_withdrawn += abs(entry.amount)
            elif entry.entry_type == TreasuryEntryType.ADJUSTMENT:
                balance.total_adjustments += entry.amount

        balance.current_balance = (
            balance.total_fees_collected
            + balance.total_deposits
            - balance.total_withdrawn
            + balance.total_adjustments
        )
        return balance

    async def get_treasury_ledger(self, limit: int = DEFAULT_LEDGER_LIMIT) -> list[TreasuryEntry]:
        """Most recent treasury entries, newest first."""
        return await self._store.get_treasury_entries(limit=limit)

    async def is_settlement_processed(self, game_id: int) -> dict[str, Any]:
        """Whether a game has been settled, and how many market records it has."""
        game = await self._store.get_game(game_id)
        settled_at: Optional[datetime] = game.settled_at if game else None
        count = await self._store.count_settlements_for_game(game_id)
        return {
            "processed": settled_at is not None,
            "settled_at": settled_at,
            "market_settlements": count,
        }

"""
Unit tests for TreasuryService.

Tests cover:
- Settlement preview: matches real settlement, writes nothing
- Preview outcome resolution order, invalid outcomes
- Treasury balance across entry types
- Treasury ledger listing
- is_settlement_processed
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tote.core.errors import DataIntegrityError, GameNotFoundError
from tote.domain.models import GameStatus, TreasuryEntry, TreasuryEntryType
from tote.services.treasury import UNKNOWN_OUTCOME, TreasuryService

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def treasury(store):
    return TreasuryService(store)


async def seed_market(seed, game_id=1, **game_kwargs):
    game = await seed.game(game_id, **game_kwargs)
    await seed.market(f"m{game_id}", game_id=game_id)
    await seed.trades(f"m{game_id}", [("u1", "200", "HOME"), ("u2", "150", "HOME"), ("u3", "50", "AWAY")])
    return game


class TestPreview:
    """Test preview_settlement."""

    @pytest.mark.asyncio
    async def test_preview_matches_settlement(self, store, seed, queue, processor, treasury):
        game = await seed_market(seed)

        preview = await treasury.preview_settlement(1, "HOME")

        [market] = preview.markets
        assert preview.outcome == "HOME"
        assert preview.outcome_source == "argument"
        assert market.gross_pool == Decimal("400")
        assert market.home_pool == Decimal("350")
        assert market.away_pool == Decimal("50")
        assert market.platform_fee == Decimal("1.50")
        assert {p.user_id: p.amount for p in market.payouts} == {
            "u1": Decimal("227.71"),
            "u2": Decimal("170.79"),
        }

        await queue.enqueue_settlement(game, "HOME")
        result = await processor.process_settlement(await queue.lock_next("w1"))

        assert preview.total_payouts == result.total_payout_amount
        assert preview.total_fees == result.total_fee_amount

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, store, seed, treasury):
        await seed_market(seed)

        await treasury.preview_settlement(1, "HOME")

        assert await store.get_receipts(market_id="m1") == []
        assert await store.get_payouts(market_id="m1") == []
        assert await store.get_treasury_entries() == []
        assert (await store.get_market("m1")).market_status.value == "open"
        assert not (await store.get_game(1)).is_settled

    @pytest.mark.asyncio
    async def test_cancellation_preview(self, seed, treasury):
        await seed_market(seed)

        preview = await treasury.preview_settlement(1, "canceled")

        assert preview.is_cancellation is True
        assert preview.total_refunds == Decimal("400")
        assert preview.total_fees == Decimal("0")
        assert preview.markets[0].payouts == []

    @pytest.mark.asyncio
    async def test_unknown_game(self, treasury):
        with pytest.raises(GameNotFoundError):
            await treasury.preview_settlement(404)

    @pytest.mark.asyncio
    async def test_outcome_from_queue(self, seed, queue, treasury):
        game = await seed_market(seed)
        await queue.enqueue_settlement(game, "AWAY")

        preview = await treasury.preview_settlement(1)

        assert (preview.outcome, preview.outcome_source) == ("AWAY", "queue")
        assert preview.markets[0].payouts[0].user_id == "u3"

    @pytest.mark.asyncio
    async def test_outcome_from_game_winner(self, seed, treasury):
        await seed_market(seed, winner_side="home")

        preview = await treasury.preview_settlement(1)

        assert (preview.outcome, preview.outcome_source) == ("HOME", "game")

    @pytest.mark.asyncio
    async def test_outcome_from_game_status(self, seed, treasury):
        await seed_market(seed, status=GameStatus.POSTPONED)

        preview = await treasury.preview_settlement(1)

        assert (preview.outcome, preview.outcome_source) == ("POSTPONED", "game_status")
        assert preview.is_cancellation is True

    @pytest.mark.asyncio
    async def test_unknown_outcome_still_shows_pools(self, seed, treasury):
        await seed_market(seed, status=GameStatus.IN_PROGRESS)

        preview = await treasury.preview_settlement(1)

        [market] = preview.markets
        assert preview.outcome == UNKNOWN_OUTCOME
        assert market.home_pool == Decimal("350")
        assert market.gross_pool == Decimal("400")
        assert market.away_pool == Decimal("50")
        assert market.payouts == []
        assert market.winning_pool == Decimal("0")
        assert market.losing_pool == Decimal("0")
        assert market.platform_fee == Decimal("0")
        assert market.net_distributed == Decimal("0")
        assert market.undistributed_amount == Decimal("0")
        assert market.total_payouts == Decimal("0")
        assert market.total_refunds == Decimal("0")
        assert preview.total_gross == Decimal("400")
        assert preview.total_fees == Decimal("0")

    @pytest.mark.asyncio
    async def test_invalid_explicit_outcome_is_rejected(self, seed, treasury):
        await seed_market(seed)

        with pytest.raises(DataIntegrityError):
            await treasury.preview_settlement(1, "HOEM")

    @pytest.mark.asyncio
    async def test_invalid_stored_winner_is_passed_over(self, seed, treasury):
        await seed_market(seed, 1, winner_side="HOEM")
        await seed_market(seed, 2, status=GameStatus.POSTPONED, winner_side="nobody")

        unknown = await treasury.preview_settlement(1)
        postponed = await treasury.preview_settlement(2)

        assert unknown.outcome == UNKNOWN_OUTCOME
        assert unknown.markets[0].platform_fee == Decimal("0")
        assert (postponed.outcome, postponed.outcome_source) == ("POSTPONED", "game_status")
        assert postponed.markets[0].total_refunds == Decimal("400")

    @pytest.mark.asyncio
    async def test_preview_reports_already_settled(self, seed, queue, processor, treasury):
        game = await seed_market(seed)
        await queue.enqueue_settlement(game, "HOME")
        await processor.process_settlement(await queue.lock_next("w1"))

        preview = await treasury.preview_settlement(1)

        assert preview.already_settled is True
        assert preview.markets[0].already_settled is True


class TestTreasuryBalance:
    """Test get_treasury_balance and get_treasury_ledger."""

    @pytest.mark.asyncio
    async def test_empty_treasury(self, treasury):
        balance = await treasury.get_treasury_balance()

        assert balance.current_balance == Decimal("0")
        assert balance.total_entries == 0
        assert balance.last_updated is None

    @pytest.mark.asyncio
    async def test_balance_across_entry_types(self, store, treasury):
        rows = [
            (TreasuryEntryType.SETTLEMENT_FEE, "3.00", 1),
            (TreasuryEntryType.SETTLEMENT_FEE, "1.50", 2),
            (TreasuryEntryType.DEPOSIT, "100.00", 3),
            (TreasuryEntryType.WITHDRAWAL, "-40.00", 4),
            (TreasuryEntryType.ADJUSTMENT, "-5.25", 5),
        ]
        for entry_type, amount, minutes in rows:
            await store.insert_treasury_entry(
                TreasuryEntry(
                    entry_type=entry_type,
                    amount=Decimal(amount),
                    created_at=T0 + timedelta(minutes=minutes),
                )
            )

        balance = await treasury.get_treasury_balance()

        assert balance.total_fees_collected == Decimal("4.50")
        assert balance.total_deposits == Decimal("100.00")
        assert balance.total_withdrawn == Decimal("40.00")
        assert balance.total_adjustments == Decimal("-5.25")
        assert balance.current_balance == Decimal("59.25")
        assert balance.total_entries == 5
        assert balance.last_updated == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_ledger_newest_first(self, store, treasury):
        for minutes in range(5):
            await store.insert_treasury_entry(
                TreasuryEntry(
                    entry_type=TreasuryEntryType.DEPOSIT,
                    amount=Decimal(minutes),
                    created_at=T0 + timedelta(minutes=minutes),
                )
            )

        entries = await treasury.get_treasury_ledger(limit=3)

        assert [e.amount for e in entries] == [Decimal("4"), Decimal("3"), Decimal("2")]

    @pytest.mark.asyncio
    async def test_settlement_fee_lands_in_balance(self, seed, queue, processor, treasury):
        game = await seed_market(seed)
        await queue.enqueue_settlement(game, "HOME")
        await processor.process_settlement(await queue.lock_next("w1"))

        balance = await treasury.get_treasury_balance()

        assert balance.total_fees_collected == Decimal("1.50")
        assert balance.current_balance == Decimal("1.50")


class TestSettlementProcessed:
    """Test is_settlement_processed."""

    @pytest.mark.asyncio
    async def test_before_and_after(self, seed, queue, processor, treasury):
        game = await seed_market(seed)

        before = await treasury.is_settlement_processed(1)
        await queue.enqueue_settlement(game, "HOME")
        await processor.process_settlement(await queue.lock_next("w1"))
        after = await treasury.is_settlement_processed(1)

        assert before == {"processed": False, "settled_at": None, "market_settlements": 0}
        assert after["processed"] is True
        assert after["settled_at"] is not None
        assert after["market_settlements"] == 1

    @pytest.mark.asyncio
    async def test_unknown_game(self, treasury):
        result = await treasury.is_settlement_processed(404)

        assert result["processed"] is False
        assert result["market_settlements"] == 0

"""
Unit tests for the parimutuel calculator.

Tests cover:
- Pool, fee and payout math for the reference scenarios
- Cent allocation (sum of payouts + fee == gross pool)
- Proportionality between winners
- Zero-loser, zero-winner, DRAW and cancellation markets
- Rounding helpers
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tote.domain.models import Side, Trade
from tote.services.calculator import (
    FEE_RATE,
    allocate_cents,
    calculate_settlement,
    to_cents,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def trade(user_id: str, amount: str, side: str, offset: int = 0) -> Trade:
    return Trade(
        user_id=user_id,
        market_id="m1",
        amount=Decimal(amount),
        side=Side(side),
        created_at=T0 + timedelta(seconds=offset),
    )


def payout_of(calc, user_id: str) -> Decimal:
    return sum(line.amount_cents for line in calc.payouts if line.user_id == user_id)


class TestSimpleMarket:
    """Two equal stakes on opposite sides."""

    def test_winner_gets_stake_plus_net_losing_pool(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "100", "AWAY", 1)],
            "HOME",
        )

        assert calc.gross_pool == Decimal("200")
        assert calc.winning_pool == Decimal("100")
        assert calc.losing_pool == Decimal("100")
        assert calc.platform_fee == Decimal("3.00")
        assert calc.net_distributed == Decimal("97.00")
        assert len(calc.payouts) == 1
        assert calc.payouts[0].amount_cents == Decimal("197.00")
        assert calc.payouts[0].profit == Decimal("97.00")
        assert calc.winners_count == 1
        assert calc.losers_count == 1

    def test_outcome_is_case_insensitive(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "100", "AWAY", 1)],
            "away",
        )

        assert calc.outcome == "AWAY"
        assert payout_of(calc, "u2") == Decimal("197.00")

    def test_default_fee_rate(self):
        calc = calculate_settlement([trade("u1", "10", "HOME")], "HOME")
        assert calc.fee_rate == FEE_RATE == Decimal("0.03")

    def test_custom_fee_rate(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "100", "AWAY", 1)],
            "HOME",
            fee_rate=Decimal("0.05"),
        )

        assert calc.platform_fee == Decimal("5.00")
        assert payout_of(calc, "u1") == Decimal("195.00")


class TestUnevenPools:
    """Several winners sharing a small losing pool."""

    def test_two_winners_one_loser(self):
        calc = calculate_settlement(
            [
                trade("u1", "200", "HOME"),
                trade("u2", "150", "HOME", 1),
                trade("u3", "50", "AWAY", 2),
            ],
            "HOME",
        )

        assert calc.gross_pool == Decimal("400")
        assert calc.winning_pool == Decimal("350")
        assert calc.losing_pool == Decimal("50")
        assert calc.platform_fee == Decimal("1.50")
        assert calc.net_distributed == Decimal("48.50")

        u1 = calc.payouts[0]
        assert u1.profit == Decimal("48.50") * (Decimal("200") / Decimal("350"))
        assert payout_of(calc, "u1") == Decimal("227.71")
        assert payout_of(calc, "u2") == Decimal("170.79")
        assert calc.total_payouts + calc.platform_fee == calc.gross_pool

    def test_whale_and_small_winners(self):
        calc = calculate_settlement(
            [
                trade("whale", "1000", "HOME"),
                trade("small1", "50", "HOME", 1),
                trade("small2", "50", "HOME", 2),
                trade("loser", "1000", "AWAY", 3),
            ],
            "HOME",
        )

        assert calc.platform_fee == Decimal("30.00")
        assert calc.net_distributed == Decimal("970.00")
        assert calc.payouts[0].profit == Decimal("970.00") * (Decimal("1000") / Decimal("1100"))
        assert payout_of(calc, "whale") == Decimal("1881.82")
        assert payout_of(calc, "small1") == Decimal("94.09")
        assert payout_of(calc, "small2") == Decimal("94.09")
        assert calc.total_payouts == Decimal("2070.00")

    def test_profit_is_proportional_to_stake(self):
        calc = calculate_settlement(
            [
                trade("a", "300", "AWAY"),
                trade("b", "100", "AWAY", 1),
                trade("c", "77", "HOME", 2),
            ],
            "AWAY",
        )

        a, b = calc.payouts
        assert a.proportion == Decimal("0.75")
        assert b.proportion == Decimal("0.25")
        assert a.profit == b.profit * 3

    def test_odd_amounts_reconcile_to_the_cent(self):
        calc = calculate_settlement(
            [
                trade("a", "33.33", "HOME"),
                trade("b", "33.33", "HOME", 1),
                trade("c", "33.34", "HOME", 2),
                trade("d", "17.17", "AWAY", 3),
            ],
            "HOME",
        )

        assert calc.platform_fee == Decimal("0.52")
        assert calc.total_payouts + calc.platform_fee == calc.gross_pool
        for line in calc.payouts:
            assert line.amount_cents == line.amount_cents.quantize(Decimal("0.01"))
            assert abs(line.amount_cents - line.amount) < Decimal("0.01")


class TestOneSidedMarkets:
    """Markets where one side has no stakes."""

    def test_no_losers_returns_stakes_without_fee(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "100", "HOME", 1), trade("u3", "100", "HOME", 2)],
            "HOME",
        )

        assert calc.losing_pool == Decimal("0")
        assert calc.platform_fee == Decimal("0.00")
        assert [line.amount_cents for line in calc.payouts] == [Decimal("100.00")] * 3

    def test_no_winners_keeps_fee_and_leaves_remainder_undistributed(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "100", "HOME", 1), trade("u3", "100", "HOME", 2)],
            "AWAY",
        )

        assert calc.winning_pool == Decimal("0")
        assert calc.losing_pool == Decimal("300")
        assert calc.platform_fee == Decimal("9.00")
        assert calc.payouts == []
        assert calc.undistributed_amount == Decimal("291.00")

    def test_draw_matches_no_side(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "50", "AWAY", 1)],
            "DRAW",
        )

        assert calc.is_cancellation is False
        assert calc.winners_count == 0
        assert calc.losing_pool == Decimal("150")
        assert calc.platform_fee == Decimal("4.50")
        assert calc.payouts == []

    def test_no_trades(self):
        calc = calculate_settlement([], "HOME")

        assert calc.gross_pool == Decimal("0")
        assert calc.platform_fee == Decimal("0.00")
        assert calc.payouts == []
        assert calc.undistributed_amount == Decimal("0")


class TestCancellation:
    """CANCELED and POSTPONED void the market."""

    @pytest.mark.parametrize("outcome", ["CANCELED", "POSTPONED", "canceled"])
    def test_every_trade_is_refunded(self, outcome):
        trades = [trade("u1", "100", "HOME"), trade("u2", "40", "AWAY", 1), trade("u1", "10", "AWAY", 2)]

        calc = calculate_settlement(trades, outcome)

        assert calc.is_cancellation is True
        assert calc.refunds == trades
        assert calc.payouts == []
        assert calc.platform_fee == Decimal("0")
        assert calc.net_distributed == calc.gross_pool == Decimal("150")
        assert calc.total_refunds == Decimal("150")
        assert calc.undistributed_amount == Decimal("0")

    def test_refunds_grouped_per_user(self):
        calc = calculate_settlement(
            [trade("u1", "100", "HOME"), trade("u2", "40", "AWAY", 1), trade("u1", "10", "AWAY", 2)],
            "CANCELED",
        )

        grouped = calc.refunds_by_user()
        assert list(grouped) == ["u1", "u2"]
        assert sum(t.amount for t in grouped["u1"]) == Decimal("110")


class TestRounding:
    """to_cents and allocate_cents."""

    def test_to_cents_rounds_half_up(self):
        assert to_cents(Decimal("1.005")) == Decimal("1.01")
        assert to_cents(Decimal("1.004")) == Decimal("1.00")
        assert to_cents(Decimal("0.015")) == Decimal("0.02")

    def test_fee_on_odd_losing_pool_rounds_half_up(self):
        calc = calculate_settlement([trade("u1", "1", "HOME"), trade("u2", "0.50", "AWAY", 1)], "HOME")
        assert calc.platform_fee == Decimal("0.02")

    def test_leftover_cent_goes_to_earliest_on_tie(self):
        third = Decimal("100") / Decimal("3")
        assert allocate_cents([third, third, third], Decimal("100")) == [
            Decimal("33.34"),
            Decimal("33.33"),
            Decimal("33.33"),
        ]

    def test_leftover_cent_goes_to_largest_remainder(self):
        result = allocate_cents([Decimal("1.001"), Decimal("1.009")], Decimal("2.01"))
        assert result == [Decimal("1.00"), Decimal("1.01")]

    def test_empty(self):
        assert allocate_cents([], Decimal("10")) == []

"""Parimutuel settlement calculator.

Pure functions only: given the trades of one market and a declared outcome,
compute the pools, the platform fee and each winner's payout. The processor
and the admin preview both call calculate_settlement so the two can never
diverge.

Money rules:
- the fee is taken from the losing pool only and rounded to the cent
- exact per-trade payouts are kept alongside cent amounts; cent amounts are
  allocated by largest remainder so that sum(payouts) + fee == gross pool
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from tote.domain.models import Trade, is_cancellation

FEE_RATE = Decimal("0.03")
CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_cents(value: Decimal) -> Decimal:
    """Round a money value to two decimals, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def allocate_cents(amounts: Sequence[Decimal], total: Decimal) -> list[Decimal]:
    """Round each amount to cents so the results add up to ``total`` exactly.

    Every amount is floored, then the leftover cents go one at a time to the
    amounts with the largest dropped remainder (earlier entries win ties).
    """
    if not amounts:
        return []
    floors = [a.quantize(CENT, rounding=ROUND_FLOOR) for a in amounts]
    leftover = int((to_cents(total) - sum(floors, ZERO)) / CENT)
    if leftover <= 0:
        return floors
    order = sorted(
        range(len(amounts)),
        key=lambda i: (-(amounts[i] - floors[i]), i),
    )
    for i in order[:leftover]:
        floors[i] += CENT
    return floors


@dataclass
class PayoutLine:
    """A winning trade's share of the pool."""
    trade: Trade
    proportion: Decimal
    profit: Decimal
    amount: Decimal
    amount_cents: Decimal = ZERO

    @property
    def user_id(self) -> str:
        return self.trade.user_id

    @property
    def stake(self) -> Decimal:
        return self.trade.amount


@dataclass
class SettlementCalculation:
    """Pools, fee and payouts for one market."""
    outcome: str
    is_cancellation: bool
    fee_rate: Decimal
    gross_pool: Decimal = ZERO
    winning_pool: Decimal = ZERO
    losing_pool: Decimal = ZERO
    platform_fee: Decimal = ZERO
    net_distributed: Decimal = ZERO
    payouts: list[PayoutLine] = field(default_factory=list)
    refunds: list[Trade] = field(default_factory=list)
    winners_count: int = 0
    losers_count: int = 0

    @property
    def total_payouts(self) -> Decimal:
        return sum((p.amount_cents for p in self.payouts), ZERO)

    @property
    def total_refunds(self) -> Decimal:
        return sum((t.amount for t in self.refunds), ZERO)

    @property
    def undistributed_amount(self) -> Decimal:
        """Net amount with nobody to receive it (no winners)."""
        if self.is_cancellation or self.payouts:
            return ZERO
        return self.net_distributed

    def payouts_by_user(self) -> "OrderedDict[str, list[PayoutLine]]":
        grouped: OrderedDict[str, list[PayoutLine]] = OrderedDict()
        for line in self.payouts:
            grouped.setdefault(line.user_id, []).append(line)
        return grouped

    def refunds_by_user(self) -> "OrderedDict[str, list[Trade]]":
        grouped: OrderedDict[str, list[Trade]] = OrderedDict()
        for trade in self.refunds:
            grouped.setdefault(trade.user_id, []).append(trade)
        return grouped


def calculate_settlement(
    trades: Sequence[Trade],
    outcome: str,
    fee_rate: Optional[Decimal] = None,
) -> SettlementCalculation:
    """Settle one market's trades against a declared outcome.

    Args:
        trades: All trade_lock trades of the market.
        outcome: HOME/AWAY, or a cancellation (CANCELED/POSTPONED). Any other
            value (e.g. DRAW) matches no side, so every trade loses.
        fee_rate: Share of the losing pool kept by the platform.

    Returns:
        SettlementCalculation with cent-reconciled payouts.
    """
    rate = FEE_RATE if fee_rate is None else Decimal(fee_rate)
    outcome = str(outcome).upper()
    calc = SettlementCalculation(
        outcome=outcome,
        is_cancellation=is_cancellation(outcome),
        fee_rate=rate,
    )
    calc.gross_pool = sum((t.amount for t in trades), ZERO)

    if calc.is_cancellation:
        calc.refunds = list(trades)
        calc.net_distributed = calc.gross_pool
        return calc

    winners = [t for t in trades if t.side.value == outcome]
    losers = [t for t in trades if t.side.value != outcome]
    calc.winners_count = len(winners)
    calc.losers_count = len(losers)
    calc.winning_pool = sum((t.amount for t in winners), ZERO)
    calc.losing_pool = sum((t.amount for t in losers), ZERO)
    calc.platform_fee = to_cents(calc.losing_pool * rate)
    calc.net_distributed = calc.losing_pool - calc.platform_fee

    if calc.winning_pool == 0:
        return calc

    for trade in winners:
        proportion = trade.amount / calc.winning_pool
        profit = calc.net_distributed * proportion
        calc.payouts.append(
            PayoutLine(
                trade=trade,
                proportion=proportion,
                profit=profit,
                amount=trade.amount + profit,
            )
        )

    cents = allocate_cents(
        [p.amount for p in calc.payouts],
        calc.gross_pool - calc.platform_fee,
    )
    for line, amount in zip(calc.payouts, cents):
        line.amount_cents = amount

    return calc

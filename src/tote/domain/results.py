"""
Tagged settlement results.

Every trade, market and job the processor touches ends up as one of these
values, so callers and tests can see exactly what happened without reading
logs.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from tote.domain.models import ReceiptType


class ResultTag(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TradeResult:
    """Outcome of one user's payout or refund within a market.

    A user holding several trades in a market receives a single receipt, so
    trade_ids lists every stake the effect covers.
    """
    user_id: str
    receipt_type: ReceiptType
    tag: ResultTag
    amount: Decimal = Decimal("0")
    trade_ids: list[str] = field(default_factory=list)
    receipt_id: Optional[str] = None
    payout_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class MarketResult:
    """Outcome of settling one market."""
    market_id: str
    tag: ResultTag
    outcome: Optional[str] = None
    is_cancellation: bool = False
    settlement_id: Optional[str] = None
    gross_pool: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    treasury_recorded: bool = False
    trades: list[TradeResult] = field(default_factory=list)
    reason: Optional[str] = None

    def count(self, tag: ResultTag) -> int:
        return sum(1 for t in self.trades if t.tag == tag)

    def amount(self, receipt_type: ReceiptType) -> Decimal:
        """Money actually moved for this receipt type."""
        return sum(
            (t.amount for t in self.trades
             if t.receipt_type == receipt_type and t.tag == ResultTag.SUCCESS),
            Decimal("0"),
        )


@dataclass
class SettlementResult:
    """Summary of processing one settlement queue item."""
    success: bool
    queue_item_id: str
    game_id: int
    already_settled: bool = False
    markets_settled: int = 0
    payouts_created: int = 0
    refunds_created: int = 0
    receipts_created: int = 0
    skipped_due_to_receipt: int = 0
    receipts_failed: int = 0
    total_payout_amount: Decimal = Decimal("0")
    total_refund_amount: Decimal = Decimal("0")
    total_fee_amount: Decimal = Decimal("0")
    markets: list[MarketResult] = field(default_factory=list)
    error: Optional[str] = None
    retryable: bool = True

    def add_market(self, market: MarketResult) -> None:
        """Fold one market's result into the job totals."""
        self.markets.append(market)
        if market.tag == ResultTag.SUCCESS:
            self.markets_settled += 1
        if market.treasury_recorded:
            self.total_fee_amount += market.platform_fee
        for trade in market.trades:
            if trade.tag == ResultTag.SUCCESS:
                self.receipts_created += 1
                if trade.receipt_type == ReceiptType.PAYOUT:
                    self.payouts_created += 1
                    self.total_payout_amount += trade.amount
                elif trade.receipt_type == ReceiptType.REFUND:
                    self.refunds_created += 1
                    self.total_refund_amount += trade.amount
            elif trade.tag == ResultTag.SKIPPED:
                self.skipped_due_to_receipt += 1
            else:
                self.receipts_failed += 1


@dataclass
class BatchResult:
    """Tally of one process_all_settlements run."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    reclaimed: int = 0
    results: list[SettlementResult] = field(default_factory=list)

    def add(self, result: SettlementResult) -> None:
        self.results.append(result)
        self.processed += 1
        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1

"""Domain models - pure data structures with no I/O dependencies."""

from tote.domain.models import (
    Direction,
    Game,
    GameStatus,
    LedgerEntry,
    LedgerEntryType,
    Market,
    MarketSettlement,
    MarketStatus,
    Outcome,
    Payout,
    PayoutStatus,
    QueueStatus,
    ReceiptStatus,
    ReceiptType,
    SettlementQueueItem,
    SettlementReceipt,
    Side,
    Trade,
    TreasuryBalance,
    TreasuryEntry,
    TreasuryEntryType,
    is_cancellation,
)
from tote.domain.results import BatchResult, MarketResult, ResultTag, SettlementResult, TradeResult

__all__ = [
    # Enums
    "Side",
    "Outcome",
    "GameStatus",
    "MarketStatus",
    "QueueStatus",
    "ReceiptType",
    "ReceiptStatus",
    "LedgerEntryType",
    "Direction",
    "PayoutStatus",
    "TreasuryEntryType",
    "is_cancellation",
    # Entities
    "Game",
    "Market",
    "Trade",
    "LedgerEntry",
    "Payout",
    "SettlementReceipt",
    "MarketSettlement",
    "TreasuryEntry",
    "TreasuryBalance",
    "SettlementQueueItem",
    # Tagged results
    "ResultTag",
    "TradeResult",
    "MarketResult",
    "SettlementResult",
    "BatchResult",
]

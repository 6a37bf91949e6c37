"""
Settlement domain models.

These models represent games, markets, trades and every record settlement
writes: receipts, payouts, market settlements, treasury entries and queue
items. Money is always Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import uuid


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Side(str, Enum):
    """The two outcome sides a trade can take."""
    HOME = "HOME"
    AWAY = "AWAY"


class Outcome(str, Enum):
    """Declared result of a game, as carried by a settlement queue item."""
    HOME = "HOME"
    AWAY = "AWAY"
    DRAW = "DRAW"
    CANCELED = "CANCELED"
    POSTPONED = "POSTPONED"


CANCELLATION_OUTCOMES = frozenset({Outcome.CANCELED.value, Outcome.POSTPONED.value})


def is_cancellation(outcome: str) -> bool:
    """True if this outcome refunds every trade instead of settling to a winner."""
    return str(outcome).upper() in CANCELLATION_OUTCOMES


class GameStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    FINAL = "final"
    POSTPONED = "postponed"
    CANCELED = "canceled"


class MarketStatus(str, Enum):
    OPEN = "open"
    SETTLED = "settled"
    VOID = "void"


class QueueStatus(str, Enum):
    """Settlement queue item lifecycle."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ReceiptType(str, Enum):
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    FEE = "FEE"


class ReceiptStatus(str, Enum):
    INITIATED = "INITIATED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class LedgerEntryType(str, Enum):
    TRADE_LOCK = "trade_lock"
    TRADE_RELEASE = "trade_release"
    PAYOUT = "payout"


class Direction(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class PayoutStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class TreasuryEntryType(str, Enum):
    SETTLEMENT_FEE = "SETTLEMENT_FEE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    ADJUSTMENT = "ADJUSTMENT"


@dataclass
class Game:
    """A real-world sporting event."""
    id: int
    league: str
    status: GameStatus = GameStatus.SCHEDULED
    external_game_id: Optional[str] = None
    provider: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    winner_side: Optional[str] = None
    settled_at: Optional[datetime] = None

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None


@dataclass
class Market:
    """A tradable proposition bound to a game.

    Bound by game_id, or for legacy rows by external_game_id + league.
    """
    id: str
    title: str = ""
    game_id: Optional[int] = None
    external_game_id: Optional[str] = None
    league: Optional[str] = None
    is_locked: bool = False
    lock_reason: Optional[str] = None
    locked_at: Optional[datetime] = None
    market_status: MarketStatus = MarketStatus.OPEN
    game_status: Optional[str] = None
    final_outcome: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.market_status in (MarketStatus.SETTLED, MarketStatus.VOID)


@dataclass
class Trade:
    """One user's stake on one side of one market (a trade_lock ledger row)."""
    user_id: str
    market_id: str
    amount: Decimal
    side: Side
    currency: str = "USDC"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class LedgerEntry:
    """A row in the user ledger."""
    user_id: str
    market_id: Optional[str]
    entry_type: LedgerEntryType
    direction: Direction
    amount: Decimal
    currency: str = "USDC"
    side: Optional[Side] = None
    reference_id: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class Payout:
    """A queued instruction for the external payout rail."""
    user_id: str
    market_id: str
    amount: Decimal
    currency: str = "USDC"
    status: PayoutStatus = PayoutStatus.QUEUED
    destination_wallet: Optional[str] = None
    tx_signature: Optional[str] = None
    error: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_now)
    processed_at: Optional[datetime] = None


@dataclass
class SettlementReceipt:
    """Proof that one monetary effect was initiated for (market, user, type)."""
    settlement_queue_id: str
    market_id: str
    game_id: int
    user_id: str
    receipt_type: ReceiptType
    amount: Decimal
    currency: str = "USDC"
    status: ReceiptStatus = ReceiptStatus.INITIATED
    payout_id: Optional[str] = None
    ledger_entry_id: Optional[str] = None
    tx_hash: Optional[str] = None
    id: str = field(default_factory=new_id)
    initiated_at: datetime = field(default_factory=_now)
    confirmed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


@dataclass
class MarketSettlement:
    """The single settlement record of a market."""
    market_id: str
    game_id: int
    outcome: str
    gross_pool: Decimal
    winning_pool: Decimal
    losing_pool: Decimal
    platform_fee_amount: Decimal
    net_distributed_amount: Decimal
    fee_rate: Decimal
    total_volume: Decimal = Decimal("0")
    total_payouts: Decimal = Decimal("0")
    payout_count: int = 0
    winners_count: int = 0
    losers_count: int = 0
    settled_by: str = "system"
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    settled_at: datetime = field(default_factory=_now)


@dataclass
class TreasuryEntry:
    """A row in the platform treasury ledger."""
    entry_type: TreasuryEntryType
    amount: Decimal
    settlement_id: Optional[str] = None
    market_id: Optional[str] = None
    game_id: Optional[int] = None
    fee_rate: Optional[Decimal] = None
    gross_pool: Optional[Decimal] = None
    losing_pool: Optional[Decimal] = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_now)


@dataclass
class TreasuryBalance:
    """Aggregate view over the treasury ledger."""
    total_fees_collected: Decimal = Decimal("0")
    total_deposits: Decimal = Decimal("0")
    total_withdrawn: Decimal = Decimal("0")
    total_adjustments: Decimal = Decimal("0")
    current_balance: Decimal = Decimal("0")
    total_entries: int = 0
    last_updated: Optional[datetime] = None


@dataclass
class SettlementQueueItem:
    """A per-game unit of settlement work."""
    game_id: int
    outcome: Optional[str] = None
    league: Optional[str] = None
    external_game_id: Optional[str] = None
    provider: Optional[str] = None
    status: QueueStatus = QueueStatus.QUEUED
    reason: Optional[str] = None
    attempts: int = 0
    next_attempt_at: datetime = field(default_factory=_now)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

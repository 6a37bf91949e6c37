"""Services - business logic with single responsibility."""

from tote.services.calculator import calculate_settlement
from tote.services.ledger_store import LedgerStore
from tote.services.metrics import MetricsEmitter
from tote.services.queue import SettlementQueue
from tote.services.settlement import SettlementProcessor
from tote.services.treasury import TreasuryService
from tote.services.worker import SettlementWorker

__all__ = [
    "calculate_settlement",
    "LedgerStore",
    "MetricsEmitter",
    "SettlementQueue",
    "SettlementProcessor",
    "TreasuryService",
    "SettlementWorker",
]

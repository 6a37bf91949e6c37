"""Settlement Processor - settles one game's markets exactly once.

For one locked queue item this service:
- Loads the game and stops early if it (or any of its markets) was already settled
- Force-locks any market that is still open for trading
- Settles each market independently: void + refunds on cancellation,
  otherwise parimutuel payouts to the winning side
- Writes a receipt before every money movement and confirms it after, so a
  retry after a crash never pays twice
- Records one market_settlements row per market and the platform fee in the
  treasury ledger
- Marks the queue item DONE, or FAILED with backoff if anything escapes

Every trade, market and job ends as a tagged result (see tote.domain.results).
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import structlog

from tote.core.config import ConfigManager
from tote.core.errors import DuplicateRecordError, GameNotFoundError, ToteError, is_retryable
from tote.domain.models import (
    Direction,
    Game,
    LedgerEntry,
    LedgerEntryType,
    Market,
    MarketSettlement,
    MarketStatus,
    Outcome,
    Payout,
    ReceiptType,
    SettlementQueueItem,
    SettlementReceipt,
    Trade,
    TreasuryEntry,
    TreasuryEntryType,
    is_cancellation,
)
from tote.domain.results import MarketResult, ResultTag, SettlementResult, TradeResult
from tote.services.calculator import FEE_RATE, PayoutLine, SettlementCalculation, calculate_settlement
from tote.services.ledger_store import LedgerStore, parse_outcome
from tote.services.metrics import MetricsEmitter
from tote.services.queue import SettlementQueue

log = structlog.get_logger()

SAFETY_LOCK_REASON = "SETTLEMENT_SAFETY"
DEFAULT_SETTLED_BY = "system"
DEFAULT_CURRENCY = "USDC"


class SettlementProcessor:
    """Runs the settlement of one queue item.

    Idempotency gates, in order:
    1. game.settled_at set -> DONE, nothing written
    2. any market_settlements row for the game -> stamp settled_at, DONE
    3. per market: already settled/void or has a settlement row -> skipped
    4. per user: receipt for (market, user, type) exists -> skipped
    """

    def __init__(
        self,
        store: LedgerStore,
        queue: SettlementQueue,
        config: Optional[ConfigManager] = None,
        fee_rate: Optional[Decimal] = None,
        default_currency: Optional[str] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
        settled_by: str = DEFAULT_SETTLED_BY,
    ):
        """Initialize the processor.

        Args:
            store: LedgerStore holding all settlement tables.
            queue: SettlementQueue used to finish or fail the item.
            config: Configuration manager (fee rate, default currency).
            fee_rate: Explicit fee rate, overrides config.
            default_currency: Currency for trades that carry none.
            metrics_emitter: MetricsEmitter for observability metrics.
            settled_by: Recorded on every market_settlements row.
        """
        self._store = store
        self._queue = queue
        self._metrics = metrics_emitter
        self._settled_by = settled_by
        self._log = log.bind(component="settlement_processor")

        if fee_rate is not None:
            self._fee_rate = Decimal(str(fee_rate))
        elif config is not None:
            self._fee_rate = config.get_decimal("settlement.fee_rate", FEE_RATE)
        else:
            self._fee_rate = FEE_RATE

        if default_currency:
            self._currency = default_currency
        elif config is not None:
            self._currency = config.get("settlement.default_currency", DEFAULT_CURRENCY)
        else:
            self._currency = DEFAULT_CURRENCY

    @property
    def fee_rate(self) -> Decimal:
        return self._fee_rate

    async def process_settlement(
        self,
        item: SettlementQueueItem,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """Settle the game behind a locked queue item.

        Never raises for settlement problems: anything escaping the market
        loop marks the item FAILED (with backoff) and is reported in the
        result, flagged retryable or not. Only a failure to record that
        FAILED state propagates.
        """
        result = SettlementResult(success=False, queue_item_id=item.id, game_id=item.game_id)
        job_log = self._log.bind(queue_item_id=item.id, game_id=item.game_id)
        job_log.info("settlement_started", outcome=item.outcome, attempts=item.attempts)

        try:
            await self._process(item, result, job_log, now)
        except Exception as e:
            result.success = False
            result.error = str(e) or type(e).__name__
            result.retryable = is_retryable(e)
            job_log.error(
                "settlement_failed",
                error=result.error,
                error_type=type(e).__name__,
                retryable=result.retryable,
            )
            await self._queue.mark_failed(item.id, result.error, now=now)
            if self._metrics:
                self._metrics.record_job("failed")
            return result

        result.success = True
        if self._metrics:
            self._metrics.record_job("already_settled" if result.already_settled else "done")
        return result

    async def _process(
        self,
        item: SettlementQueueItem,
        result: SettlementResult,
        job_log: structlog.stdlib.BoundLogger,
        now: Optional[datetime],
    ) -> None:
        game = await self._store.get_game(item.game_id)
        if game is None:
            raise GameNotFoundError(item.game_id)

        if game.settled_at is not None:
            job_log.info("settlement_already_complete", settled_at=game.settled_at.isoformat())
            result.already_settled = True
            await self._queue.mark_done(item.id, now=now)
            return

        existing = await self._store.count_settlements_for_game(game.id)
        if existing:
            job_log.info("settlement_partially_complete", market_settlements=existing)
            result.already_settled = True
            await self._store.stamp_game_settled(game.id, now)
            await self._queue.mark_done(item.id, now=now)
            return

        # Validated before any market is touched
        outcome = parse_outcome(item.outcome).value if item.outcome else Outcome.CANCELED.value
        cancellation = is_cancellation(outcome)

        markets = await self._store.get_markets_for_game(game)
        if not markets:
            job_log.info("settlement_no_markets", league=game.league)
            await self._store.stamp_game_settled(game.id, now)
            await self._queue.mark_done(item.id, now=now)
            return

        for market in markets:
            if not market.is_locked:
                job_log.warning(
                    "market_safety_violation",
                    market_id=market.id,
                    reason=SAFETY_LOCK_REASON,
                )
                await self._store.lock_market(market.id, SAFETY_LOCK_REASON, now)
                market.is_locked = True
                market.lock_reason = SAFETY_LOCK_REASON
                if self._metrics:
                    self._metrics.record_safety_lock()

        for market in markets:
            try:
                market_result = await self._settle_market(item, game, market, outcome, cancellation, now)
            except Exception as e:
                job_log.error(
                    "market_settlement_failed",
                    market_id=market.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                market_result = MarketResult(
                    market_id=market.id,
                    tag=ResultTag.FAILED,
                    outcome=outcome,
                    is_cancellation=cancellation,
                    reason=str(e) or type(e).__name__,
                )
            result.add_market(market_result)

        await self._store.stamp_game_settled(game.id, now)
        await self._queue.mark_done(item.id, now=now)

        job_log.info(
            "settlement_completed",
            outcome=outcome,
            markets=len(markets),
            markets_settled=result.markets_settled,
            payouts_created=result.payouts_created,
            refunds_created=result.refunds_created,
            total_payout_amount=str(result.total_payout_amount),
            total_refund_amount=str(result.total_refund_amount),
            total_fee_amount=str(result.total_fee_amount),
            skipped_due_to_receipt=result.skipped_due_to_receipt,
            receipts_failed=result.receipts_failed,
        )

    async def _settle_market(
        self,
        item: SettlementQueueItem,
        game: Game,
        market: Market,
        outcome: str,
        cancellation: bool,
        now: Optional[datetime],
    ) -> MarketResult:
        market_log = self._log.bind(queue_item_id=item.id, game_id=game.id, market_id=market.id)

        if market.is_resolved or await self._store.get_market_settlement(market.id) is not None:
            market_log.info("market_already_settled", market_status=market.market_status.value)
            return MarketResult(
                market_id=market.id,
                tag=ResultTag.SKIPPED,
                outcome=outcome,
                is_cancellation=cancellation,
                reason="already_settled",
            )

        await self._store.resolve_market(
            market.id,
            MarketStatus.VOID if cancellation else MarketStatus.SETTLED,
            outcome,
            game_status=game.status.value,
        )

        trades = await self._store.get_trades_for_market(market.id)
        calc = calculate_settlement(trades, outcome, self._fee_rate)

        market_result = MarketResult(
            market_id=market.id,
            tag=ResultTag.SUCCESS,
            outcome=outcome,
            is_cancellation=cancellation,
            gross_pool=calc.gross_pool,
            platform_fee=calc.platform_fee,
        )

        if cancellation:
            for user_id, user_trades in calc.refunds_by_user().items():
                market_result.trades.append(
                    await self._refund_user(item, game, market, user_id, user_trades, outcome, now)
                )
        else:
            for user_id, lines in calc.payouts_by_user().items():
                market_result.trades.append(
                    await self._pay_user(item, game, market, user_id, lines, now)
                )

        settlement = self._build_settlement(item, game, market, calc, market_result, now)
        try:
            await self._store.insert_market_settlement(settlement)
        except DuplicateRecordError:
            market_log.warning("market_settlement_exists")
            market_result.tag = ResultTag.SKIPPED
            market_result.reason = "settlement_exists"
            return market_result
        market_result.settlement_id = settlement.id

        if calc.platform_fee > 0:
            market_result.treasury_recorded = await self._record_fee(game, market, calc, settlement, market_log)

        if self._metrics:
            self._metrics.record_market_settled("void" if cancellation else "settled")

        market_log.info(
            "market_settled",
            outcome=outcome,
            void=cancellation,
            gross_pool=str(calc.gross_pool),
            winning_pool=str(calc.winning_pool),
            losing_pool=str(calc.losing_pool),
            platform_fee=str(calc.platform_fee),
            net_distributed=str(calc.net_distributed),
            paid=str(market_result.amount(ReceiptType.PAYOUT)),
            refunded=str(market_result.amount(ReceiptType.REFUND)),
            trades=len(trades),
        )
        return market_result

    def _build_settlement(
        self,
        item: SettlementQueueItem,
        game: Game,
        market: Market,
        calc: SettlementCalculation,
        market_result: MarketResult,
        now: Optional[datetime],
    ) -> MarketSettlement:
        if calc.is_cancellation:
            total_payouts = calc.total_refunds
            payout_count = len(calc.refunds_by_user())
        else:
            total_payouts = calc.total_payouts
            payout_count = len(calc.payouts_by_user())

        return MarketSettlement(
            market_id=market.id,
            game_id=game.id,
            outcome=calc.outcome,
            total_volume=calc.gross_pool,
            total_payouts=total_payouts,
            payout_count=payout_count,
            gross_pool=calc.gross_pool,
            winning_pool=calc.winning_pool,
            losing_pool=calc.losing_pool,
            platform_fee_amount=calc.platform_fee,
            net_distributed_amount=calc.net_distributed,
            winners_count=calc.winners_count,
            losers_count=calc.losers_count,
            fee_rate=calc.fee_rate,
            settled_by=self._settled_by,
            settled_at=now or datetime.now(timezone.utc),
            meta={
                "queue_item_id": item.id,
                "undistributed_amount": str(calc.undistributed_amount),
                "receipts_failed": market_result.count(ResultTag.FAILED),
                "receipts_skipped": market_result.count(ResultTag.SKIPPED),
            },
        )

    async def _record_fee(
        self,
        game: Game,
        market: Market,
        calc: SettlementCalculation,
        settlement: MarketSettlement,
        market_log: structlog.stdlib.BoundLogger,
    ) -> bool:
        """Write the fee to the treasury. Failure is logged, never raised."""
        entry = TreasuryEntry(
            entry_type=TreasuryEntryType.SETTLEMENT_FEE,
            amount=calc.platform_fee,
            settlement_id=settlement.id,
            market_id=market.id,
            game_id=game.id,
            fee_rate=calc.fee_rate,
            gross_pool=calc.gross_pool,
            losing_pool=calc.losing_pool,
            meta={
                "outcome": calc.outcome,
                "winners_count": calc.winners_count,
                "losers_count": calc.losers_count,
                "net_distributed": str(calc.net_distributed),
                "undistributed_amount": str(calc.undistributed_amount),
            },
        )
        try:
            await self._store.insert_treasury_entry(entry)
        except DuplicateRecordError:
            market_log.info("treasury_entry_exists", settlement_id=settlement.id)
            return True
        except Exception as e:
            market_log.error(
                "treasury_entry_failed",
                settlement_id=settlement.id,
                amount=str(calc.platform_fee),
                error=str(e),
            )
            if self._metrics:
                self._metrics.record_treasury_failure()
            return False

        if self._metrics:
            self._metrics.record_platform_fee(calc.platform_fee)
        market_log.info("treasury_fee_recorded", amount=str(calc.platform_fee))
        return True

    async def _refund_user(
        self,
        item: SettlementQueueItem,
        game: Game,
        market: Market,
        user_id: str,
        trades: list[Trade],
        outcome: str,
        now: Optional[datetime],
    ) -> TradeResult:
        """Release a user's full stake in a void market."""
        amount = sum((t.amount for t in trades), Decimal("0"))
        trade_ids = [t.id for t in trades]
        currency = trades[0].currency or self._currency

        receipt, skipped = await self._open_receipt(
            item, game, market, user_id, ReceiptType.REFUND, amount, currency, trade_ids
        )
        if receipt is None:
            return skipped

        try:
            entry = LedgerEntry(
                user_id=user_id,
                market_id=market.id,
                entry_type=LedgerEntryType.TRADE_RELEASE,
                direction=Direction.CREDIT,
                amount=amount,
                currency=currency,
                reference_id=f"refund-{item.id}",
                meta={
                    "reason": outcome,
                    "original_trades": trade_ids,
                    "receipt_id": receipt.id,
                },
            )
            await self._store.insert_ledger_entry(entry)
            await self._store.confirm_receipt(receipt.id, ledger_entry_id=entry.id, confirmed_at=now)
        except Exception as e:
            return await self._fail_receipt(receipt, trade_ids, e, now)

        if self._metrics:
            self._metrics.record_refund(amount)
        return TradeResult(
            user_id=user_id,
            receipt_type=ReceiptType.REFUND,
            tag=ResultTag.SUCCESS,
            amount=amount,
            trade_ids=trade_ids,
            receipt_id=receipt.id,
            ledger_entry_id=entry.id,
        )

    async def _pay_user(
        self,
        item: SettlementQueueItem,
        game: Game,
        market: Market,
        user_id: str,
        lines: list[PayoutLine],
        now: Optional[datetime],
    ) -> TradeResult:
        """Queue a winner's payout: stake back plus share of the net losing pool."""
        amount = sum((line.amount_cents for line in lines), Decimal("0"))
        stake = sum((line.stake for line in lines), Decimal("0"))
        proportion = sum((line.proportion for line in lines), Decimal("0"))
        trade_ids = [line.trade.id for line in lines]
        currency = lines[0].trade.currency or self._currency

        receipt, skipped = await self._open_receipt(
            item, game, market, user_id, ReceiptType.PAYOUT, amount, currency, trade_ids
        )
        if receipt is None:
            return skipped

        try:
            payout = Payout(user_id=user_id, market_id=market.id, amount=amount, currency=currency)
            await self._store.insert_payout(payout)
            entry = LedgerEntry(
                user_id=user_id,
                market_id=market.id,
                entry_type=LedgerEntryType.PAYOUT,
                direction=Direction.CREDIT,
                amount=amount,
                currency=currency,
                reference_id=f"settlement-{item.id}",
                meta={
                    "stake": str(stake),
                    "share_of_losing_pool": str(amount - stake),
                    "proportion": str(proportion),
                    "original_trades": trade_ids,
                    "receipt_id": receipt.id,
                },
            )
            await self._store.insert_ledger_entry(entry)
            await self._store.confirm_receipt(
                receipt.id,
                payout_id=payout.id,
                ledger_entry_id=entry.id,
                confirmed_at=now,
            )
        except Exception as e:
            return await self._fail_receipt(receipt, trade_ids, e, now)

        if self._metrics:
            self._metrics.record_payout(amount)
        return TradeResult(
            user_id=user_id,
            receipt_type=ReceiptType.PAYOUT,
            tag=ResultTag.SUCCESS,
            amount=amount,
            trade_ids=trade_ids,
            receipt_id=receipt.id,
            payout_id=payout.id,
            ledger_entry_id=entry.id,
        )

    async def _open_receipt(
        self,
        item: SettlementQueueItem,
        game: Game,
        market: Market,
        user_id: str,
        receipt_type: ReceiptType,
        amount: Decimal,
        currency: str,
        trade_ids: list[str],
    ) -> tuple[Optional[SettlementReceipt], Optional[TradeResult]]:
        """Create the INITIATED receipt guarding one money movement.

        Returns (receipt, None) when the caller may proceed, otherwise
        (None, result) with the SKIPPED or FAILED result to report.
        """
        skipped = TradeResult(
            user_id=user_id,
            receipt_type=receipt_type,
            tag=ResultTag.SKIPPED,
            amount=amount,
            trade_ids=trade_ids,
            reason="receipt_exists",
        )
        if await self._store.receipt_exists(market.id, user_id, receipt_type):
            if self._metrics:
                self._metrics.record_receipt_skipped(receipt_type.value)
            return None, skipped

        receipt = SettlementReceipt(
            settlement_queue_id=item.id,
            market_id=market.id,
            game_id=game.id,
            user_id=user_id,
            receipt_type=receipt_type,
            amount=amount,
            currency=currency,
        )
        try:
            await self._store.create_receipt(receipt)
        except DuplicateRecordError:
            if self._metrics:
                self._metrics.record_receipt_skipped(receipt_type.value)
            return None, skipped
        except ToteError as e:
            self._log.warning(
                "receipt_create_failed",
                market_id=market.id,
                user_id=user_id,
                receipt_type=receipt_type.value,
                error=str(e),
            )
            if self._metrics:
                self._metrics.record_receipt_failed(receipt_type.value)
            return None, TradeResult(
                user_id=user_id,
                receipt_type=receipt_type,
                tag=ResultTag.FAILED,
                amount=amount,
                trade_ids=trade_ids,
                reason=str(e),
            )
        return receipt, None

    async def _fail_receipt(
        self,
        receipt: SettlementReceipt,
        trade_ids: list[str],
        error: Exception,
        now: Optional[datetime],
    ) -> TradeResult:
        reason = str(error) or type(error).__name__
        self._log.warning(
            "receipt_failed",
            receipt_id=receipt.id,
            market_id=receipt.market_id,
            user_id=receipt.user_id,
            receipt_type=receipt.receipt_type.value,
            error=reason,
        )
        try:
            await self._store.fail_receipt(receipt.id, reason, failed_at=now)
        except ToteError as e:
            self._log.error("receipt_failure_not_recorded", receipt_id=receipt.id, error=str(e))
        if self._metrics:
            self._metrics.record_receipt_failed(receipt.receipt_type.value)
        return TradeResult(
            user_id=receipt.user_id,
            receipt_type=receipt.receipt_type,
            tag=ResultTag.FAILED,
            amount=receipt.amount,
            trade_ids=trade_ids,
            receipt_id=receipt.id,
            reason=reason,
        )

"""Settlement queue - per-game jobs, locking and retry backoff.

Queue item state machine:
- QUEUED: waiting for a worker (next_attempt_at may be in the future)
- PROCESSING: locked by exactly one worker
- DONE: settled (or nothing to settle)
- FAILED: last attempt raised; eligible again once next_attempt_at passes
- SKIPPED: enqueued with skip=True, never picked up unless retried by hand

audit() reports games and items that are stuck somewhere in that machine;
enqueue_orphaned_final_games() repairs the most common case, a FINAL game
that never made it into the queue.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Sequence

import structlog

from tote.core.config import ConfigManager
from tote.core.errors import DataIntegrityError, DuplicateRecordError
from tote.domain.models import Game, Outcome, QueueStatus, SettlementQueueItem
from tote.services.ledger_store import LedgerStore, parse_outcome
from tote.services.metrics import MetricsEmitter

log = structlog.get_logger()

# Minutes to wait after attempt 1, 2, 3, 4 and 5+
DEFAULT_BACKOFF_MINUTES = (1, 5, 30, 120, 720)

# (warning, critical) issue counts per audit check
AUDIT_THRESHOLDS = {
    "final_not_queued": (1, 3),
    "queued_too_long": (3, 10),
    "failed_many": (2, 5),
    "processing_stale": (1, 3),
}
QUEUED_TOO_LONG = timedelta(minutes=30)
PROCESSING_STALE = timedelta(minutes=10)
FAILED_MANY_ATTEMPTS = 5
AUDIT_SCAN_LIMIT = 1000
AUDIT_SAMPLE_SIZE = 20
ORPHAN_SCAN_LIMIT = 100


def backoff_delay(attempt: int, schedule: Sequence[int] = DEFAULT_BACKOFF_MINUTES) -> timedelta:
    """Delay before the next try after the given (1-indexed) failed attempt.

    Attempts past the end of the schedule reuse its last entry.
    """
    if not schedule:
        return timedelta(0)
    index = min(max(attempt, 1), len(schedule)) - 1
    return timedelta(minutes=schedule[index])


def determine_winner(game: Game) -> Optional[Outcome]:
    """Outcome of a finished game from its score, else its recorded winner_side.

    Returns None when neither is known.
    """
    if game.home_score is not None and game.away_score is not None:
        if game.home_score > game.away_score:
            return Outcome.HOME
        if game.away_score > game.home_score:
            return Outcome.AWAY
        return Outcome.DRAW
    if game.winner_side:
        try:
            return parse_outcome(game.winner_side)
        except DataIntegrityError:
            return None
    return None


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class QueueCheck:
    """One audit check: how many games/items are in a suspicious state."""
    name: str
    description: str
    count: int
    warning_at: int
    critical_at: int
    game_ids: list[int] = field(default_factory=list)

    @property
    def status(self) -> CheckStatus:
        if self.count >= self.critical_at:
            return CheckStatus.CRITICAL
        if self.count >= self.warning_at:
            return CheckStatus.WARNING
        return CheckStatus.OK


@dataclass
class QueueAudit:
    """Result of SettlementQueue.audit()."""
    checked_at: datetime
    checks: dict[str, QueueCheck] = field(default_factory=dict)

    @property
    def status(self) -> CheckStatus:
        statuses = {check.status for check in self.checks.values()}
        if CheckStatus.CRITICAL in statuses:
            return CheckStatus.CRITICAL
        if CheckStatus.WARNING in statuses:
            return CheckStatus.WARNING
        return CheckStatus.OK

    @property
    def total_issues(self) -> int:
        return sum(check.count for check in self.checks.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "total_issues": self.total_issues,
            "checked_at": self.checked_at.isoformat(),
            "checks": {
                name: {
                    "status": check.status.value,
                    "count": check.count,
                    "game_ids": check.game_ids,
                }
                for name, check in self.checks.items()
            },
        }


def _check(name: str, description: str, game_ids: list[int]) -> QueueCheck:
    warning_at, critical_at = AUDIT_THRESHOLDS[name]
    return QueueCheck(
        name=name,
        description=description,
        count=len(game_ids),
        warning_at=warning_at,
        critical_at=critical_at,
        game_ids=game_ids[:AUDIT_SAMPLE_SIZE],
    )


class SettlementQueue:
    """Queue operations over the settlement_queue table.

    Usage:
        queue = SettlementQueue(store)
        await queue.enqueue_settlement(game, "HOME")
        item = await queue.lock_next("worker-1")
        ...
        await queue.mark_done(item.id)
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[ConfigManager] = None,
        backoff_minutes: Optional[Sequence[int]] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ):
        self._store = store
        self._metrics = metrics_emitter
        self._log = log.bind(component="settlement_queue")

        if backoff_minutes is not None:
            schedule = list(backoff_minutes)
        elif config is not None:
            schedule = config.get_list("settlement.backoff_minutes", list(DEFAULT_BACKOFF_MINUTES))
        else:
            schedule = list(DEFAULT_BACKOFF_MINUTES)
        self._backoff_minutes = [int(m) for m in schedule]

    @property
    def backoff_minutes(self) -> list[int]:
        return list(self._backoff_minutes)

    def next_attempt_at(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + backoff_delay(attempt, self._backoff_minutes)

    async def enqueue_settlement(
        self,
        game: Game,
        outcome: Optional[str] = None,
        reason: Optional[str] = None,
        skip: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """Queue a game for settlement.

        Idempotent per game: returns False when the game already has a queue
        item. A missing outcome is recorded as CANCELED so stakes are
        refunded. With skip=True the item is stored as SKIPPED and only runs
        after retry_item.

        Raises:
            DataIntegrityError: outcome is not one of Outcome.
        """
        now = now or datetime.now(timezone.utc)
        try:
            declared = parse_outcome(outcome) if outcome else Outcome.CANCELED
        except DataIntegrityError:
            self._log.warning("settlement_outcome_rejected", game_id=game.id, outcome=outcome)
            raise

        item = SettlementQueueItem(
            game_id=game.id,
            league=game.league,
            external_game_id=game.external_game_id,
            provider=game.provider,
            outcome=declared.value,
            reason=reason,
            status=QueueStatus.SKIPPED if skip else QueueStatus.QUEUED,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.insert_queue_item(item)
        except DuplicateRecordError:
            self._log.debug("settlement_already_enqueued", game_id=game.id)
            return False

        self._log.info(
            "settlement_enqueued",
            game_id=game.id,
            league=game.league,
            outcome=item.outcome,
            status=item.status.value,
        )
        return True

    async def lock_next(
        self,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[SettlementQueueItem]:
        """Claim the next due item for this worker, or None if nothing is due."""
        item = await self._store.lock_next_queue_item(worker_id, now=now)
        if item is not None:
            self._log.info(
                "queue_item_locked",
                queue_item_id=item.id,
                game_id=item.game_id,
                worker_id=worker_id,
                attempts=item.attempts,
            )
        return item

    async def mark_done(self, item_id: str, now: Optional[datetime] = None) -> None:
        await self._store.complete_queue_item(item_id, now=now)
        self._log.info("queue_item_done", queue_item_id=item_id)

    async def mark_failed(
        self,
        item_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Record a failed attempt and schedule the retry.

        Returns:
            When the item becomes eligible again, or None if it is gone.
        """
        now = now or datetime.now(timezone.utc)
        item = await self._store.get_queue_item(item_id)
        if item is None:
            self._log.warning("queue_item_not_found", queue_item_id=item_id)
            return None

        attempts = item.attempts + 1
        retry_at = self.next_attempt_at(attempts, now)
        await self._store.fail_queue_item(item_id, reason, attempts, retry_at, now=now)

        if self._metrics:
            self._metrics.record_queue_failure()

        self._log.warning(
            "queue_item_failed",
            queue_item_id=item_id,
            game_id=item.game_id,
            attempts=attempts,
            next_attempt_at=retry_at.isoformat(),
            reason=reason,
        )
        return retry_at

    async def retry_item(self, item_id: str, now: Optional[datetime] = None) -> bool:
        """Admin reset of a FAILED or SKIPPED item so it is picked up now."""
        reset = await self._store.reset_queue_item(item_id, now=now)
        if reset:
            self._log.info("queue_item_reset", queue_item_id=item_id)
        return reset

    async def reclaim_stale_locks(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        """Requeue PROCESSING items whose lock is older than older_than.

        Only safe when older_than is well above the longest job; a job that is
        still running would otherwise be processed twice (receipts keep the
        money side idempotent, but the work is repeated).
        """
        now = now or datetime.now(timezone.utc)
        reclaimed = await self._store.release_stale_locks(now - older_than, now=now)
        if reclaimed:
            self._log.warning(
                "stale_locks_reclaimed",
                count=reclaimed,
                older_than_seconds=older_than.total_seconds(),
            )
        return reclaimed

    async def list_items(
        self,
        statuses: Optional[Sequence[QueueStatus]] = None,
        league: Optional[str] = None,
        limit: int = 100,
    ) -> list[SettlementQueueItem]:
        return await self._store.list_queue_items(statuses=statuses, league=league, limit=limit)

    async def get_stats(self) -> dict[str, Any]:
        """Count of items per status plus the total."""
        counts = await self._store.count_queue_by_status()
        stats: dict[str, Any] = {status.value: counts.get(status.value, 0) for status in QueueStatus}
        stats["total"] = sum(counts.values())
        if self._metrics:
            self._metrics.update_queue_depth(stats)
        return stats

    async def audit(self, now: Optional[datetime] = None) -> QueueAudit:
        """Look for settlement work that is stuck.

        Checks:
        - final_not_queued: FINAL, unsettled games with no queue item
        - queued_too_long: QUEUED/PROCESSING items untouched for 30 minutes
        - failed_many: FAILED items with 5 or more attempts
        - processing_stale: PROCESSING items locked for over 10 minutes
        """
        now = now or datetime.now(timezone.utc)
        orphans = await self._store.list_unqueued_final_games(limit=AUDIT_SCAN_LIMIT)
        waiting = await self._store.list_queue_items(
            statuses=[QueueStatus.QUEUED, QueueStatus.PROCESSING],
            updated_before=now - QUEUED_TOO_LONG,
            limit=AUDIT_SCAN_LIMIT,
        )
        failing = await self._store.list_queue_items(
            statuses=[QueueStatus.FAILED],
            min_attempts=FAILED_MANY_ATTEMPTS,
            limit=AUDIT_SCAN_LIMIT,
        )
        stale = await self._store.list_queue_items(
            statuses=[QueueStatus.PROCESSING],
            locked_before=now - PROCESSING_STALE,
            limit=AUDIT_SCAN_LIMIT,
        )

        audit = QueueAudit(checked_at=now)
        for check in (
            _check(
                "final_not_queued",
                "FINAL games with no settlement queue item and not settled",
                [g.id for g in orphans],
            ),
            _check(
                "queued_too_long",
                "QUEUED/PROCESSING items stale for over 30 minutes",
                [i.game_id for i in waiting],
            ),
            _check(
                "failed_many",
                "FAILED items with 5+ attempts (need manual intervention)",
                [i.game_id for i in failing],
            ),
            _check(
                "processing_stale",
                "PROCESSING items with a lock older than 10 minutes",
                [i.game_id for i in stale],
            ),
        ):
            audit.checks[check.name] = check

        if audit.status != CheckStatus.OK:
            self._log.warning(
                "settlement_queue_audit",
                status=audit.status.value,
                **{name: check.count for name, check in audit.checks.items()},
            )
        return audit

    async def enqueue_orphaned_final_games(
        self,
        limit: int = ORPHAN_SCAN_LIMIT,
        now: Optional[datetime] = None,
    ) -> int:
        """Queue FINAL games that were never queued, with the winner from the score.

        Games whose result cannot be determined are left alone: queueing them
        without an outcome would refund a game that was actually played.

        Returns:
            Number of games enqueued.
        """
        enqueued = 0
        for game in await self._store.list_unqueued_final_games(limit=limit):
            winner = determine_winner(game)
            if winner is None:
                self._log.warning("orphaned_game_without_result", game_id=game.id, league=game.league)
                continue
            if await self.enqueue_settlement(game, winner.value, reason="orphaned_final_game", now=now):
                enqueued += 1

        if enqueued:
            self._log.info("orphaned_games_enqueued", count=enqueued)
            if self._metrics:
                self._metrics.record_orphans_enqueued(enqueued)
        return enqueued

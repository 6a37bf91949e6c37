"""Settlement Worker - drains the settlement queue.

process_all_settlements is the batch entry point a scheduler calls; the
component can also run it on a polling loop. Several workers (processes, or
instances with distinct worker ids in one process) may drain the same queue
concurrently: each item is claimed by exactly one of them.
"""

import asyncio
import os
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog

from tote.core.config import ConfigManager
from tote.core.lifecycle import BaseComponent, HealthCheckResult
from tote.core.logging import settlement_context
from tote.domain.results import BatchResult
from tote.services.metrics import MetricsEmitter
from tote.services.queue import CheckStatus, SettlementQueue
from tote.services.settlement import SettlementProcessor

log = structlog.get_logger()

DEFAULT_BATCH_SIZE = 50
DEFAULT_POLL_INTERVAL = 60


def generate_worker_id() -> str:
    return f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class SettlementWorker(BaseComponent):
    """Locks queue items one at a time and hands them to the processor."""

    def __init__(
        self,
        queue: SettlementQueue,
        processor: SettlementProcessor,
        config: Optional[ConfigManager] = None,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stale_lock_seconds: Optional[int] = None,
        metrics_emitter: Optional[MetricsEmitter] = None,
    ):
        """Initialize the worker.

        Args:
            queue: SettlementQueue to drain.
            processor: SettlementProcessor that settles each item.
            config: Configuration manager.
            worker_id: Lock owner identity; generated per instance if not
                given here or in settlement.worker_id.
            batch_size: Default max_items per batch.
            poll_interval: Seconds between batches in the polling loop.
            stale_lock_seconds: Reclaim PROCESSING items older than this
                before each batch; 0 disables reclaiming.
            metrics_emitter: MetricsEmitter for observability metrics.
        """
        super().__init__(name="settlement_worker")
        self._queue = queue
        self._processor = processor
        self._metrics = metrics_emitter

        configured_id = config.get("settlement.worker_id") if config else None
        self._worker_id = worker_id or configured_id or generate_worker_id()

        if batch_size is None:
            batch_size = config.get_int("settlement.batch_size", DEFAULT_BATCH_SIZE) if config else DEFAULT_BATCH_SIZE
        self._batch_size = batch_size

        if poll_interval is None:
            poll_interval = (
                config.get_float("settlement.poll_interval_seconds", DEFAULT_POLL_INTERVAL)
                if config else DEFAULT_POLL_INTERVAL
            )
        self._poll_interval = poll_interval

        if stale_lock_seconds is None:
            stale_lock_seconds = config.get_int("settlement.stale_lock_seconds", 0) if config else 0
        self._stale_lock_seconds = stale_lock_seconds

        self._log = log.bind(component="settlement_worker", worker_id=self._worker_id)

        # State
        self._should_run = False
        self._loop_task: Optional[asyncio.Task] = None
        self._batches_run = 0
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._last_batch_at: Optional[float] = None

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def process_all_settlements(
        self,
        max_items: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        """Lock and process items until the queue has nothing due or max_items is hit."""
        limit = self._batch_size if max_items is None else max_items
        batch = BatchResult()
        started = time.monotonic()

        if self._stale_lock_seconds > 0:
            batch.reclaimed = await self._queue.reclaim_stale_locks(
                timedelta(seconds=self._stale_lock_seconds), now=now
            )
            if batch.reclaimed and self._metrics:
                self._metrics.record_stale_locks(batch.reclaimed)

        while batch.processed < limit:
            item = await self._queue.lock_next(self._worker_id, now=now)
            if item is None:
                break
            with settlement_context(
                worker_id=self._worker_id,
                queue_item_id=item.id,
                game_id=item.game_id,
            ):
                result = await self._processor.process_settlement(item, now=now)
            batch.add(result)

        elapsed = time.monotonic() - started
        self._batches_run += 1
        self._jobs_processed += batch.processed
        self._jobs_failed += batch.failed
        self._last_batch_at = time.time()

        if self._metrics:
            self._metrics.record_batch_duration(elapsed)
            await self._queue.get_stats()

        if batch.processed or batch.reclaimed:
            self._log.info(
                "settlement_batch_completed",
                processed=batch.processed,
                succeeded=batch.succeeded,
                failed=batch.failed,
                reclaimed=batch.reclaimed,
                duration_seconds=round(elapsed, 3),
            )
        return batch

    async def _do_start(self) -> None:
        self._should_run = True
        self._log.info(
            "starting_settlement_worker",
            batch_size=self._batch_size,
            poll_interval=self._poll_interval,
            stale_lock_seconds=self._stale_lock_seconds,
        )
        self._loop_task = asyncio.create_task(self._run_loop())

    async def _do_stop(self) -> None:
        self._should_run = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._log.info(
            "settlement_worker_stopped",
            batches_run=self._batches_run,
            jobs_processed=self._jobs_processed,
            jobs_failed=self._jobs_failed,
        )

    async def _do_health_check(self) -> HealthCheckResult:
        queue_stats = await self._queue.get_stats()
        audit = await self._queue.audit()
        details = {
            "worker_id": self._worker_id,
            "batches_run": self._batches_run,
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
            "queue": queue_stats,
            "audit": audit.to_dict(),
        }
        if self._loop_task is not None and self._loop_task.done():
            return HealthCheckResult.unhealthy("Settlement loop exited", **details)
        if audit.status != CheckStatus.OK:
            return HealthCheckResult.degraded(f"Settlement queue audit: {audit.status.value}", **details)
        if queue_stats.get("FAILED", 0):
            return HealthCheckResult.degraded("Failed settlements awaiting retry", **details)
        return HealthCheckResult.healthy("Settlement worker active", **details)

    async def _run_loop(self) -> None:
        """Periodic settlement loop."""
        while self._should_run:
            try:
                await self.process_all_settlements()
            except Exception as e:
                self._log.error("settlement_loop_error", error=str(e), error_type=type(e).__name__)

            await asyncio.sleep(self._poll_interval)

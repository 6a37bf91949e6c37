"""
Prometheus metrics emission for tote.

Provides settlement observability through standardized metrics collection.
All metrics use the 'tote_' prefix.
"""
from decimal import Decimal
from typing import Mapping, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from tote import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_job("done")
        emitter.record_payout(Decimal("197.00"))
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a private one if not provided)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "tote",
            "Tote settlement engine information",
            registry=self._registry,
        )
        self._info.info({
            "version": __version__,
            "component": "tote",
        })

        self._uptime = Gauge(
            "tote_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Jobs and markets
        self._jobs_total = Counter(
            "tote_settlement_jobs_total",
            "Settlement queue items processed",
            ["status"],
            registry=self._registry,
        )

        self._markets_total = Counter(
            "tote_markets_settled_total",
            "Markets settled",
            ["kind"],
            registry=self._registry,
        )

        self._safety_locks_total = Counter(
            "tote_market_safety_locks_total",
            "Markets force-locked because they were still open at settlement",
            registry=self._registry,
        )

        # Money movement
        self._payouts_total = Counter(
            "tote_payouts_total",
            "Payout receipts confirmed",
            registry=self._registry,
        )

        self._payout_amount = Counter(
            "tote_payout_amount_total",
            "Total amount queued for payout",
            registry=self._registry,
        )

        self._refunds_total = Counter(
            "tote_refunds_total",
            "Refund receipts confirmed",
            registry=self._registry,
        )

        self._refund_amount = Counter(
            "tote_refund_amount_total",
            "Total amount refunded",
            registry=self._registry,
        )

        self._fees_amount = Counter(
            "tote_platform_fees_total",
            "Platform fees recorded in the treasury",
            registry=self._registry,
        )

        self._receipts_total = Counter(
            "tote_receipts_total",
            "Receipt outcomes by type",
            ["receipt_type", "result"],
            registry=self._registry,
        )

        self._treasury_failures = Counter(
            "tote_treasury_write_failures_total",
            "Treasury fee entries that could not be written",
            registry=self._registry,
        )

        # Queue
        self._queue_failures = Counter(
            "tote_queue_failures_total",
            "Settlement queue items marked FAILED",
            registry=self._registry,
        )

        self._queue_depth = Gauge(
            "tote_settlement_queue_depth",
            "Settlement queue items by status",
            ["status"],
            registry=self._registry,
        )

        self._stale_locks = Counter(
            "tote_stale_locks_reclaimed_total",
            "PROCESSING items returned to the queue by the reaper",
            registry=self._registry,
        )

        self._orphans_enqueued = Counter(
            "tote_orphaned_games_enqueued_total",
            "FINAL games found outside the queue and enqueued",
            registry=self._registry,
        )

        self._batch_duration = Histogram(
            "tote_settlement_batch_duration_seconds",
            "Wall time of one process_all_settlements run",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self._registry,
        )

    def record_job(self, status: str) -> None:
        """Record a processed queue item.

        Args:
            status: done, failed or already_settled
        """
        self._jobs_total.labels(status=status).inc()

    def record_market_settled(self, kind: str) -> None:
        """Record a settled market.

        Args:
            kind: settled or void
        """
        self._markets_total.labels(kind=kind).inc()

    def record_safety_lock(self) -> None:
        self._safety_locks_total.inc()

    def record_payout(self, amount: Decimal) -> None:
        self._payouts_total.inc()
        self._payout_amount.inc(float(amount))
        self._receipts_total.labels(receipt_type="PAYOUT", result="confirmed").inc()

    def record_refund(self, amount: Decimal) -> None:
        self._refunds_total.inc()
        self._refund_amount.inc(float(amount))
        self._receipts_total.labels(receipt_type="REFUND", result="confirmed").inc()

    def record_receipt_skipped(self, receipt_type: str) -> None:
        self._receipts_total.labels(receipt_type=receipt_type, result="skipped").inc()

    def record_receipt_failed(self, receipt_type: str) -> None:
        self._receipts_total.labels(receipt_type=receipt_type, result="failed").inc()

    def record_platform_fee(self, amount: Decimal) -> None:
        self._fees_amount.inc(float(amount))

    def record_treasury_failure(self) -> None:
        self._treasury_failures.inc()

    def record_queue_failure(self) -> None:
        self._queue_failures.inc()

    def record_stale_locks(self, count: int) -> None:
        self._stale_locks.inc(count)

    def record_orphans_enqueued(self, count: int) -> None:
        self._orphans_enqueued.inc(count)

    def record_batch_duration(self, seconds: float) -> None:
        self._batch_duration.observe(seconds)

    def update_queue_depth(self, counts: Mapping[str, int]) -> None:
        """Update queue depth gauges from a status -> count mapping."""
        for status, count in counts.items():
            if status == "total":
                continue
            self._queue_depth.labels(status=status).set(count)

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def get_metrics(self) -> str:
        """Get Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

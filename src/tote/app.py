"""
Tote application lifecycle and component wiring.

Builds the store, queue, processor, worker and treasury from one
ConfigManager and owns their startup and shutdown:
1. Connect the ledger store
2. Start the settlement worker loop (run mode only)
3. On SIGTERM/SIGINT stop the worker, flush metrics, close the store
"""
import asyncio
import signal
from pathlib import Path
from typing import Any, Optional

from tote import __version__
from tote.core.config import ConfigManager
from tote.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from tote.core.logging import get_logger, setup_logging
from tote.services.ledger_store import LedgerStore
from tote.services.metrics import MetricsEmitter
from tote.services.queue import SettlementQueue
from tote.services.settlement import SettlementProcessor
from tote.services.treasury import TreasuryService
from tote.services.worker import SettlementWorker


class ToteApp(BaseComponent):
    """Main tote application.

    Usage:
        async with ToteApp(config) as app:
            batch = await app.worker.process_all_settlements()

        # or, as a long-running worker:
        await ToteApp(config).run_forever()
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        config_path: Optional[Path] = None,
        worker_id: Optional[str] = None,
        configure_logging: bool = True,
    ) -> None:
        """Initialize the application.

        Args:
            config: Ready ConfigManager (takes precedence over config_path)
            config_path: Path to TOML configuration file
            worker_id: Queue lock owner identity for this process
            configure_logging: Set up structlog from the logging section
        """
        super().__init__(name="ToteApp")

        self._config = config or ConfigManager.discover(config_path)

        if configure_logging:
            setup_logging(
                level=self._config.get("logging.level", "INFO"),
                json_output=self._config.get_bool("logging.json", False),
            )
        self._log = get_logger("app")

        self._metrics: Optional[MetricsEmitter] = (
            MetricsEmitter() if self._config.get_bool("metrics.enabled", True) else None
        )

        self._store = LedgerStore(config=self._config)
        self._queue = SettlementQueue(self._store, config=self._config, metrics_emitter=self._metrics)
        self._processor = SettlementProcessor(
            self._store,
            self._queue,
            config=self._config,
            metrics_emitter=self._metrics,
        )
        self._treasury = TreasuryService(self._store, config=self._config)
        self._worker = SettlementWorker(
            self._queue,
            self._processor,
            config=self._config,
            worker_id=worker_id,
            metrics_emitter=self._metrics,
        )

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def queue(self) -> SettlementQueue:
        return self._queue

    @property
    def processor(self) -> SettlementProcessor:
        return self._processor

    @property
    def treasury(self) -> TreasuryService:
        return self._treasury

    @property
    def worker(self) -> SettlementWorker:
        return self._worker

    @property
    def metrics(self) -> Optional[MetricsEmitter]:
        return self._metrics

    async def __aenter__(self) -> "ToteApp":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def _do_start(self) -> None:
        self._log.info(
            "starting_tote",
            version=__version__,
            config=str(self._config.config_path) if self._config.config_path else "defaults",
            db_path=self._store.db_path,
            worker_id=self._worker.worker_id,
        )
        await self._store.connect()

    async def _do_stop(self) -> None:
        self._log.info("stopping_tote")
        await self._worker.stop()
        if self._metrics:
            self._metrics.update_uptime(self.uptime_seconds)
        await self._store.close()
        self._log.info("tote_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        issues = []

        store_health = await self._store.health_check()
        if store_health.get("status") != "healthy":
            issues.append("ledger_store_unhealthy")

        worker_health = None
        if self._worker.is_running:
            worker_health = await self._worker.health_check()
            if worker_health.status == HealthStatus.UNHEALTHY:
                issues.append("settlement_worker_unhealthy")

        details = {
            "uptime_seconds": self.uptime_seconds,
            "store": store_health,
            "worker": worker_health.details if worker_health else None,
        }
        if issues:
            return HealthCheckResult.degraded(f"Issues: {', '.join(issues)}", **details)
        return HealthCheckResult.healthy(**details)

    def install_signal_handlers(self) -> None:
        """Request shutdown on SIGTERM and SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)
        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    def request_shutdown(self) -> None:
        self._log.info("shutdown_requested")
        self._shutdown_event.set()

    async def run_forever(self) -> None:
        """Run the settlement worker until a shutdown signal is received."""
        await self.start()
        self.install_signal_handlers()

        try:
            await self._worker.start()
            while not self._shutdown_event.is_set():
                if self._metrics:
                    self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.remove_signal_handlers()
            await self.stop()

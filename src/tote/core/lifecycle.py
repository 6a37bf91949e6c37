"""
Component lifecycle base.

Long-running pieces (the polling settlement worker) start, stop and report
health through the same small interface.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class HealthStatus(str, Enum):
    """Component health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)


class BaseComponent:
    """Base class for components providing common lifecycle functionality.

    Subclasses override:
    - _do_start() - Component-specific startup logic
    - _do_stop() - Component-specific shutdown logic
    - _do_health_check() - Component-specific health check
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (datetime.now(timezone.utc) - self._started_at).total_seconds()

    async def start(self) -> None:
        """Start the component."""
        if self._running:
            return
        await self._do_start()
        self._running = True
        self._started_at = datetime.now(timezone.utc)

    async def stop(self) -> None:
        """Stop the component."""
        if not self._running:
            return
        await self._do_stop()
        self._running = False

    async def health_check(self) -> HealthCheckResult:
        """Check component health."""
        if not self._running:
            return HealthCheckResult.unhealthy("Component not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)

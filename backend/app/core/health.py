"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1)
    • Cache connectivity (Redis PING, or "disabled")
    • Scheduler state (running / stopped, last run)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards

Aggregation: any UNHEALTHY component makes the report UNHEALTHY, otherwise
any DEGRADED component makes it DEGRADED.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.config import settings
from backend.app.core.database import ping_db

if TYPE_CHECKING:
    from backend.app.core.cache import SentMessageCache
    from backend.app.scheduler.scheduler import MessageScheduler

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database() -> ComponentHealth:
    """Check database connectivity."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        await ping_db()
        comp.message = "Connection pool available"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis(cache: Optional["SentMessageCache"]) -> ComponentHealth:
    """Check Redis connectivity; a disabled cache only degrades the service."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if cache is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "disabled"
        return comp
    try:
        await cache.ping()
        comp.message = "Cache available"
    except (RedisError, OSError) as e:
        logger.warning("Redis health check failed: %s", e)
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_scheduler(scheduler: Optional["MessageScheduler"]) -> ComponentHealth:
    """Report scheduler state; a stopped scheduler is still healthy."""
    comp = ComponentHealth(name="scheduler")
    if scheduler is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "not initialised"
        return comp
    status = await scheduler.status()
    comp.message = "running" if status.running else "stopped"
    comp.details = {
        "runs_count": status.runs_count,
        "consecutive_all_fail_count": status.consecutive_all_fail_count,
        "last_run_at": status.last_run_at.isoformat() if status.last_run_at else None,
    }
    return comp


async def run_health_check(
    cache: Optional["SentMessageCache"] = None,
    scheduler: Optional["MessageScheduler"] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_database(),
        check_redis(cache),
        check_scheduler(scheduler),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report

"""
Health check aggregation — deep health probe for the triage subsystems.

Checks:
    • Signal repository reachable (record count)
    • Notification store (inbox limit, stored total)
    • Channel dispatcher pool accepting work
    • Escalation scheduler running, last sweep outcome

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings
from backend.app.sos.repository import SignalFilter

if TYPE_CHECKING:
    from backend.app.core.services import TriageServices

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


def check_repository(services: "TriageServices") -> ComponentHealth:
    """Signal repository answers a query."""
    comp = ComponentHealth(name="signal_repository")
    start = time.monotonic()
    try:
        signals = services.repository.find(SignalFilter())
        comp.message = "Repository available"
        comp.details = {"signals": len(signals)}
    except Exception as e:
        logger.exception("Repository health check failed")
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_notification_store(services: "TriageServices") -> ComponentHealth:
    comp = ComponentHealth(name="notification_store")
    start = time.monotonic()
    comp.message = "In-app inboxes available"
    comp.details = {
        "inbox_limit": services.store.limit,
        "stored": services.store.total(),
    }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_dispatcher(services: "TriageServices") -> ComponentHealth:
    """Channel pool is open and at least one channel is enabled."""
    comp = ComponentHealth(name="notification_dispatcher")
    start = time.monotonic()
    channels = services.dispatcher.enabled_channels
    comp.details = {
        "enabled_channels": channels,
        "channel_timeout_seconds": services.config.channel_timeout_seconds,
    }
    if not services.dispatcher.is_running:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Channel pool is shut down"
    elif not channels:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No external channels enabled; in-app only"
    else:
        comp.message = f"{len(channels)} channels enabled"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_scheduler(services: "TriageServices", expected: bool) -> ComponentHealth:
    """Escalation sweep loop state and last pass outcome."""
    comp = ComponentHealth(name="escalation_scheduler")
    start = time.monotonic()
    scheduler = services.scheduler
    last = scheduler.last_report
    comp.details = {
        "running": scheduler.is_running,
        "interval_seconds": scheduler.interval_seconds,
        "runs": scheduler.runs,
        "last_sweep": last.to_dict() if last else None,
    }

    if expected and not scheduler.is_running:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Escalation sweep is not running"
    elif scheduler.last_error:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Last sweep failed: {scheduler.last_error}"
    elif last is not None and last.failed:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{last.failed} signals failed to escalate in the last sweep"
    elif not expected:
        comp.message = "Escalation sweep disabled"
    else:
        comp.message = "Escalation sweep running"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    services: "TriageServices",
    *,
    scheduler_expected: bool = True,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components = [
        check_repository(services),
        check_notification_store(services),
        check_dispatcher(services),
        check_scheduler(services, scheduler_expected),
    ]

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report

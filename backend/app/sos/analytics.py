"""
analytics.py — Read-only dashboard, analytics and responder views.

All functions work on a point-in-time snapshot from ``repository.find``;
none of them write.

Time ranges:
    "1h" | "6h" | "24h" | "7d" | "30d" | "all"
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.app.core.errors import ValidationError
from backend.app.sos.models import (
    Priority,
    SignalStatus,
    SosSignal,
    utcnow,
)
from backend.app.sos.repository import SignalFilter, SignalRepository

TIME_RANGES: Dict[str, Optional[timedelta]] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}

MAX_PAGE_SIZE = 200


def parse_time_range(time_range: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Window start for a time-range token; None means unbounded."""
    key = (time_range or "").strip().lower()
    if key not in TIME_RANGES:
        raise ValidationError(
            f"Unrecognized timeRange {time_range!r}. Must be one of: {list(TIME_RANGES)}",
            field="timeRange",
        )
    window = TIME_RANGES[key]
    if window is None:
        return None
    return (now or utcnow()) - window


def _minutes_between(start: datetime, end: Optional[datetime]) -> Optional[float]:
    if end is None:
        return None
    return (end - start).total_seconds() / 60.0


def _mean(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 1) if values else None


def signal_metrics(signal: SosSignal) -> Dict[str, Optional[float]]:
    """Minutes from creation to first response and to resolution."""
    response = _minutes_between(signal.created_at, signal.response_time)
    resolution = _minutes_between(signal.created_at, signal.resolution_time)
    return {
        "response_minutes": round(response, 1) if response is not None else None,
        "resolution_minutes": round(resolution, 1) if resolution is not None else None,
    }


def _status_counts(signals: List[SosSignal]) -> Dict[str, int]:
    counts = Counter(s.status.value for s in signals)
    return {status.value: counts.get(status.value, 0) for status in SignalStatus}


def dashboard(
    repository: SignalRepository,
    *,
    status: str = "all",
    priority: str = "all",
    time_range: str = "24h",
    limit: int = 50,
    page: int = 1,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Aggregate counts plus a filtered, paginated signal list (newest first).

    ``status`` / ``priority`` accept a single value or "all".
    """
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")

    statuses = None if status == "all" else frozenset({SignalStatus.parse(status)})
    priorities = None if priority == "all" else frozenset({Priority.parse(priority)})
    since = parse_time_range(time_range, now)

    signals = repository.find(SignalFilter(
        statuses=statuses,
        priorities=priorities,
        created_after=since,
    ))
    total = len(signals)
    total_pages = math.ceil(total / limit) if total else 0
    start = (page - 1) * limit

    stats: Dict[str, Any] = {"total": total}
    stats.update(_status_counts(signals))
    stats["critical"] = sum(1 for s in signals if s.priority == Priority.CRITICAL)
    stats["high"] = sum(1 for s in signals if s.priority == Priority.HIGH)
    stats["escalated"] = sum(1 for s in signals if s.escalation_level > 0)

    return {
        "signals": [s.to_dict() for s in signals[start:start + limit]],
        "stats": stats,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_count": total,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
            "limit": limit,
        },
        "filters": {"status": status, "priority": priority, "time_range": time_range},
    }


def analytics(
    repository: SignalRepository,
    time_range: str = "24h",
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Totals, timing averages, distributions and hourly trend for a window."""
    since = parse_time_range(time_range, now)
    signals = repository.find(SignalFilter(created_after=since))

    resolved = sum(1 for s in signals if s.status == SignalStatus.RESOLVED)
    responses = [
        m for m in (_minutes_between(s.created_at, s.response_time) for s in signals)
        if m is not None
    ]
    resolutions = [
        m for m in (_minutes_between(s.created_at, s.resolution_time) for s in signals)
        if m is not None
    ]
    priority_counts = Counter(s.priority.label for s in signals)
    hourly = Counter(s.created_at.hour for s in signals)

    return {
        "summary": {
            "total_signals": len(signals),
            "resolved_signals": resolved,
            "resolution_rate": round(resolved / len(signals), 3) if signals else 0.0,
            "average_response_minutes": _mean(responses),
            "average_resolution_minutes": _mean(resolutions),
            "escalated_count": sum(1 for s in signals if s.escalation_level > 0),
        },
        "priority_distribution": {p.label: priority_counts.get(p.label, 0) for p in Priority},
        "status_distribution": _status_counts(signals),
        "hourly_trends": [{"hour": h, "count": hourly[h]} for h in sorted(hourly)],
        "time_range": time_range,
    }


def responder_assignments(
    repository: SignalRepository,
    responder_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Signals assigned to a responder (most recently updated first) and stats."""
    signals = repository.find(SignalFilter(assigned_responder=responder_id))
    signals.sort(key=lambda s: s.updated_at, reverse=True)
    today = (now or utcnow()).date()

    return {
        "signals": [s.to_dict() for s in signals],
        "stats": {
            "total_assigned": len(signals),
            "active": sum(
                1 for s in signals
                if s.status in (SignalStatus.ACKNOWLEDGED, SignalStatus.RESPONDING)
            ),
            "resolved": sum(1 for s in signals if s.status == SignalStatus.RESOLVED),
            "resolved_today": sum(
                1 for s in signals
                if s.status == SignalStatus.RESOLVED
                and s.resolution_time is not None
                and s.resolution_time.date() == today
            ),
        },
    }

"""
FastAPI routes: SOS signal intake, triage writes and admin views.

Provides endpoints to:
    POST /sos                       — intake a new signal
    GET  /sos/dashboard             — counts + filtered signal page
    GET  /sos/clusters              — spatial clusters of active signals
    GET  /sos/analytics             — timing and distribution figures
    GET  /sos/escalations/stats     — escalation level breakdown
    POST /sos/escalations/sweep     — run one escalation pass now
    GET  /sos/{id}                  — signal details + metrics
    PUT  /sos/{id}/assign           — assign / reassign a responder
    PUT  /sos/{id}/status           — move along the transition table
    POST /sos/{id}/escalate         — manual escalation

Literal paths are declared before ``/{sos_id}`` so they are not captured
as ids.

Write handlers are plain ``def``: the coordinator blocks on channel
delivery (bounded by the channel timeout), so FastAPI runs them in its
threadpool.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.dependencies import actor_id
from backend.app.api.schemas import (
    AssignRequest,
    EscalateRequest,
    IntakeRequest,
    StatusRequest,
)
from backend.app.core.services import TriageServices, get_services
from backend.app.sos import analytics as sos_analytics
from backend.app.sos.clustering import cluster, summarize
from backend.app.sos.escalation import escalation_stats
from backend.app.sos.models import ACTIVE_STATUSES
from backend.app.sos.repository import SignalFilter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sos", tags=["sos-triage"])


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=201,
    summary="Report a new SOS signal",
)
def create_signal(
    request: IntakeRequest,
    services: TriageServices = Depends(get_services),
):
    signal = services.coordinator.intake(
        reporter_id=request.reporter_id,
        location=request.location.model_dump(),
        message=request.message,
        emergency_type=request.emergency_type,
        priority=request.priority,
    )
    return {"signal": signal.to_dict()}


# ---------------------------------------------------------------------------
# Admin views
# ---------------------------------------------------------------------------

@router.get(
    "/dashboard",
    summary="Dashboard counts and signal list",
    description="Filter by status / priority / time range; newest first, paginated.",
)
def get_dashboard(
    status: str = Query("all", examples=["pending"]),
    priority: str = Query("all", examples=["critical"]),
    time_range: str = Query("24h", alias="timeRange", examples=["24h"]),
    limit: int = Query(50, ge=1, le=sos_analytics.MAX_PAGE_SIZE),
    page: int = Query(1, ge=1),
    services: TriageServices = Depends(get_services),
):
    return sos_analytics.dashboard(
        services.repository,
        status=status,
        priority=priority,
        time_range=time_range,
        limit=limit,
        page=page,
        now=services.clock(),
    )


@router.get(
    "/clusters",
    summary="Cluster active signals by distance",
    description=(
        "Connected components of active signals linked within ``radius`` km. "
        "Sorted by dominant priority, then size."
    ),
)
def get_clusters(
    radius: Optional[float] = Query(None, description="Link distance in km", examples=[2.0]),
    services: TriageServices = Depends(get_services),
):
    radius_km = radius if radius is not None else services.config.cluster_radius_km
    active = services.repository.find(SignalFilter(statuses=ACTIVE_STATUSES))
    clusters = cluster(active, radius_km)
    return {
        "clusters": [c.to_dict() for c in clusters],
        "summary": summarize(clusters, len(active)),
        "radius_km": radius_km,
    }


@router.get(
    "/analytics",
    summary="Response analytics for a time window",
)
def get_analytics(
    time_range: str = Query("24h", alias="timeRange", examples=["7d"]),
    services: TriageServices = Depends(get_services),
):
    return sos_analytics.analytics(
        services.repository, time_range, now=services.clock(),
    )


@router.get(
    "/escalations/stats",
    summary="Escalation figures for a time window",
)
def get_escalation_stats(
    time_range: str = Query("24h", alias="timeRange", examples=["24h"]),
    services: TriageServices = Depends(get_services),
):
    since = sos_analytics.parse_time_range(time_range, services.clock())
    stats = escalation_stats(services.repository, since)
    stats["time_range"] = time_range
    return stats


@router.post(
    "/escalations/sweep",
    summary="Run one escalation sweep now",
    description="Same pass the background scheduler runs; returns the sweep report.",
)
async def run_sweep(
    include_skipped: bool = Query(False, alias="includeSkipped"),
    services: TriageServices = Depends(get_services),
    actor: str = Depends(actor_id),
):
    logger.info("Manual escalation sweep requested by %s", actor)
    report = await services.scheduler.run_once()
    return report.to_dict(include_skipped=include_skipped)


# ---------------------------------------------------------------------------
# Single signal
# ---------------------------------------------------------------------------

@router.get(
    "/{sos_id}",
    summary="Signal details",
)
def get_signal(
    sos_id: str,
    services: TriageServices = Depends(get_services),
):
    signal = services.coordinator.get(sos_id)
    return {
        "signal": signal.to_dict(),
        "metrics": sos_analytics.signal_metrics(signal),
    }


@router.put(
    "/{sos_id}/assign",
    summary="Assign a responder",
    description=(
        "Allowed while pending or acknowledged; set ``reassign`` to replace a "
        "different responder or to reassign while responding."
    ),
)
def assign_signal(
    sos_id: str,
    request: AssignRequest,
    services: TriageServices = Depends(get_services),
    actor: str = Depends(actor_id),
):
    result = services.coordinator.assign(
        sos_id,
        request.responder_id,
        actor_id=actor,
        notes=request.notes,
        expected_version=request.expected_version,
        reassign=request.reassign,
    )
    return result.to_dict()


@router.put(
    "/{sos_id}/status",
    summary="Change signal status",
)
def update_signal_status(
    sos_id: str,
    request: StatusRequest,
    services: TriageServices = Depends(get_services),
    actor: str = Depends(actor_id),
):
    result = services.coordinator.update_status(
        sos_id,
        request.status,
        actor_id=actor,
        notes=request.notes,
        expected_version=request.expected_version,
    )
    return result.to_dict()


@router.post(
    "/{sos_id}/escalate",
    summary="Manually escalate a signal",
)
def escalate_signal(
    sos_id: str,
    request: EscalateRequest,
    services: TriageServices = Depends(get_services),
    actor: str = Depends(actor_id),
):
    result = services.coordinator.escalate(
        sos_id,
        request.level,
        actor_id=actor,
        reason=request.reason,
        expected_version=request.expected_version,
    )
    return result.to_dict()

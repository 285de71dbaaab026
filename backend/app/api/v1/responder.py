"""
FastAPI routes: Responder inbox and assignments.

Provides endpoints to:
    GET    /responder/notifications              — inbox (newest first) + unread count
    PUT    /responder/notifications/read-all     — mark every entry read
    PUT    /responder/notifications/{id}/read    — mark one entry read
    DELETE /responder/notifications/{id}         — remove one entry
    GET    /responder/assignments                — signals assigned to the caller
    PUT    /responder/assignments/{id}/status    — caller moves their own signal on

The responder is always the ``X-Responder-ID`` caller; one responder can
never see or touch another's inbox.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.dependencies import responder_id
from backend.app.api.schemas import StatusRequest
from backend.app.core.services import TriageServices, get_services
from backend.app.sos.analytics import responder_assignments

router = APIRouter(prefix="/responder", tags=["responder"])


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@router.get(
    "/notifications",
    summary="List the caller's notifications",
)
def list_notifications(
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    notifications, unread = services.store.list(responder)
    return {
        "notifications": [n.to_dict() for n in notifications],
        "unread_count": unread,
        "total": len(notifications),
    }


@router.put(
    "/notifications/read-all",
    summary="Mark every notification read",
)
def mark_all_notifications_read(
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    changed = services.store.mark_all_read(responder)
    return {"marked_read": changed, "unread_count": 0}


@router.put(
    "/notifications/{notification_id}/read",
    summary="Mark one notification read",
)
def mark_notification_read(
    notification_id: str,
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    notification = services.store.mark_read(responder, notification_id)
    return {
        "notification": notification.to_dict(),
        "unread_count": services.store.unread_count(responder),
    }


@router.delete(
    "/notifications/{notification_id}",
    summary="Delete one notification",
)
def delete_notification(
    notification_id: str,
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    removed = services.store.delete(responder, notification_id)
    return {"deleted": removed.id}


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------

@router.get(
    "/assignments",
    summary="Signals assigned to the caller",
)
def list_assignments(
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    return responder_assignments(
        services.repository, responder, now=services.clock(),
    )


@router.put(
    "/assignments/{sos_id}/status",
    summary="Update the status of an assigned signal",
    description="Signals assigned to someone else respond 404.",
)
def update_assignment_status(
    sos_id: str,
    request: StatusRequest,
    services: TriageServices = Depends(get_services),
    responder: str = Depends(responder_id),
):
    result = services.coordinator.update_status(
        sos_id,
        request.status,
        actor_id=responder,
        notes=request.notes,
        expected_version=request.expected_version,
        assignee=responder,
    )
    return result.to_dict()

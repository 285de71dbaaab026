"""
coordinator.py — Assignment, status and manual escalation of SOS signals.

Every write follows the same steps:

    1. read the signal (NotFound if missing)
    2. check expected_version
         matches         → continue
         differs         → retried request already applied?  return current state
                           otherwise                          ConflictError
    3. validate against the read state (ValidationError)
    4. conditional_update(id, expected_version, mutation)
    5. dispatch notifications for the written state

═══════════════════════════════════════════════════════════════════════════
IDEMPOTENT RETRIES
═══════════════════════════════════════════════════════════════════════════

Each request is fingerprinted from (operation, actor, arguments,
expected_version) and the fingerprint is written into ``last_request``
together with the change. A retry of a request that already succeeded
finds:

    stored.version      == expected_version + 1
    stored.last_request == fingerprint

and gets the current state back without a second write or a second round
of notifications. Any other version mismatch (including a different admin
racing with the same expected_version) is a Conflict.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

from backend.app.core.config import TriageConfig
from backend.app.core.errors import ConflictError, NotFoundError, ValidationError
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.notifications.models import (
    DeliveryReport,
    NotificationEvent,
    NotificationType,
)
from backend.app.sos.escalation import escalation_targets, upgraded_priority
from backend.app.sos.models import (
    TERMINAL_STATUSES,
    EmergencyType,
    Location,
    Priority,
    SignalStatus,
    SosSignal,
    utcnow,
    validate_transition,
)
from backend.app.sos.repository import Mutation, SignalRepository
from backend.app.sos.responders import ResponderDirectory

logger = logging.getLogger(__name__)

# Statuses assign() accepts without / with the reassign flag
_ASSIGNABLE = frozenset({SignalStatus.PENDING, SignalStatus.ACKNOWLEDGED})
_REASSIGNABLE = _ASSIGNABLE | {SignalStatus.RESPONDING}


def _delivery_dict(report: Optional[DeliveryReport]) -> Dict[str, Any]:
    """Per-channel counts plus the per-target, per-channel records."""
    if report is None:
        return {"channels": {}, "targets": [], "records": []}
    return {
        "channels": report.channel_summary(),
        "targets": [r.responder_id for r in report.records],
        "records": [r.to_dict() for r in report.records],
    }


@dataclass
class CoordinatorResult:
    """
    Outcome of a coordinator write.

    ``delivery`` is None when the call was an idempotent replay.
    ``withdrawal`` is set only on reassignment to a different responder.
    """
    signal: SosSignal
    delivery: Optional[DeliveryReport] = None
    withdrawal: Optional[DeliveryReport] = None
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        notifications = _delivery_dict(self.delivery)
        if self.withdrawal is not None:
            notifications["withdrawal"] = _delivery_dict(self.withdrawal)
        return {
            "signal": self.signal.to_dict(),
            "notifications": notifications,
            "replayed": self.replayed,
        }


def request_fingerprint(
    operation: str,
    actor_id: str,
    args: Dict[str, Any],
    expected_version: int,
) -> str:
    body = json.dumps(
        {
            "op": operation,
            "actor": actor_id,
            "args": args,
            "expected_version": expected_version,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()[:32]


class AssignmentCoordinator:
    """
    Top-level orchestrator for signal writes.

    All collaborators are injected; ``clock`` drives every timestamp the
    coordinator writes (response_time, resolution_time, notes).
    """

    def __init__(
        self,
        repository: SignalRepository,
        directory: ResponderDirectory,
        dispatcher: NotificationDispatcher,
        config: TriageConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._directory = directory
        self._dispatcher = dispatcher
        self._config = config
        self._clock = clock

    # ── reads / intake ──

    def get(self, sos_id: str) -> SosSignal:
        return self._repo.get(sos_id)

    def intake(
        self,
        reporter_id: str,
        location: Union[Location, Dict[str, Any]],
        message: str,
        emergency_type: Any = EmergencyType.OTHER,
        priority: Any = Priority.MEDIUM,
    ) -> SosSignal:
        """Create a new pending signal at escalation level 0."""
        if not reporter_id:
            raise ValidationError("reporter_id is required", field="reporter_id")
        if not message or not message.strip():
            raise ValidationError("message is required", field="message")
        if isinstance(location, dict):
            if "lat" not in location or "lng" not in location:
                raise ValidationError("location requires lat and lng", field="location")
            location = Location(
                lat=location["lat"], lng=location["lng"], address=location.get("address"),
            )
        if not isinstance(location, Location):
            raise ValidationError("location is required", field="location")

        now = self._clock()
        signal = SosSignal(
            reporter_id=reporter_id,
            location=location,
            message=message.strip(),
            emergency_type=EmergencyType.parse(emergency_type),
            priority=Priority.parse(priority),
            created_at=now,
            updated_at=now,
        )
        stored = self._repo.insert(signal)
        logger.info(
            "SOS %s received: %s %s at (%.4f, %.4f)",
            stored.id, stored.priority.label, stored.emergency_type.value,
            location.lat, location.lng,
            extra={"sos_id": stored.id},
        )
        return stored

    # ── writes ──

    def assign(
        self,
        sos_id: str,
        responder_id: str,
        *,
        actor_id: str,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
        reassign: bool = False,
    ) -> CoordinatorResult:
        """
        Assign a responder.

        Allowed while pending / acknowledged; with ``reassign=True`` also
        while responding. Replacing a different responder requires
        ``reassign=True`` and sends them a withdrawal notice.
        """
        if not responder_id:
            raise ValidationError("responder_id is required", field="responder_id")
        self._directory.get_contact(responder_id)

        def plan(current: SosSignal) -> Mutation:
            allowed = _REASSIGNABLE if reassign else _ASSIGNABLE
            if current.status not in allowed:
                raise ValidationError(
                    f"Cannot assign a signal that is {current.status.value}",
                    field="status",
                    current_status=current.status.value,
                    reassign=reassign,
                )
            previous = current.assigned_responder
            if previous and previous != responder_id and not reassign:
                raise ValidationError(
                    f"Signal is already assigned to {previous}; "
                    f"set reassign to replace the responder",
                    field="reassign",
                    assigned_responder=previous,
                )
            now = self._clock()
            if previous and previous != responder_id:
                text = f"Reassigned from {previous} to {responder_id}"
            else:
                text = f"Assigned to responder {responder_id}"
            if notes:
                text = f"{text}. {notes}"

            def mutate(s: SosSignal) -> None:
                s.assigned_responder = responder_id
                if s.status == SignalStatus.PENDING:
                    s.status = SignalStatus.ACKNOWLEDGED
                if s.response_time is None:
                    s.response_time = now
                s.add_note(actor_id, text, now)

            return mutate

        before, after, replayed = self._apply(
            "assign", sos_id, actor_id,
            {"responder_id": responder_id, "notes": notes, "reassign": reassign},
            expected_version, plan,
        )
        if replayed:
            return CoordinatorResult(signal=after, replayed=True)

        previous = before.assigned_responder
        changed = previous is not None and previous != responder_id
        logger.info(
            "SOS %s %s to %s by %s",
            after.id, "reassigned" if changed else "assigned", responder_id, actor_id,
            extra={"sos_id": after.id, "responder_id": responder_id},
        )

        delivery = self._dispatcher.dispatch(
            NotificationEvent(
                type=NotificationType.ASSIGNMENT,
                signal=after,
                actor_id=actor_id,
                notes=notes,
                extra={"previous_responder": previous, "reassigned": changed},
            ),
            [responder_id],
        )
        withdrawal = None
        if changed:
            withdrawal = self._dispatcher.dispatch(
                NotificationEvent(
                    type=NotificationType.WITHDRAWAL,
                    signal=after,
                    actor_id=actor_id,
                    notes=notes,
                    extra={"new_responder": responder_id},
                ),
                [previous],
            )
        return CoordinatorResult(signal=after, delivery=delivery, withdrawal=withdrawal)

    def update_status(
        self,
        sos_id: str,
        new_status: Any,
        *,
        actor_id: str,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
        assignee: Optional[str] = None,
    ) -> CoordinatorResult:
        """
        Move a signal along the transition table.

        ``assignee`` restricts the update to signals assigned to that
        responder (responder-side updates); others look not found.
        """
        target = SignalStatus.parse(new_status)

        def plan(current: SosSignal) -> Mutation:
            if assignee is not None and current.assigned_responder != assignee:
                raise NotFoundError("SOS signal assigned to responder",
                                    sos_id=sos_id, responder_id=assignee)
            validate_transition(current.status, target)
            now = self._clock()
            text = f"Status changed from {current.status.value} to {target.value}"
            if notes:
                text = f"{text}. {notes}"

            def mutate(s: SosSignal) -> None:
                s.status = target
                if s.response_time is None:
                    s.response_time = now
                if target in TERMINAL_STATUSES:
                    s.resolution_time = now
                s.add_note(actor_id, text, now)

            return mutate

        before, after, replayed = self._apply(
            "update_status", sos_id, actor_id,
            {"status": target.value, "notes": notes},
            expected_version, plan,
        )
        if replayed:
            return CoordinatorResult(signal=after, replayed=True)

        logger.info(
            "SOS %s status %s → %s by %s",
            after.id, before.status.value, after.status.value, actor_id,
            extra={"sos_id": after.id},
        )

        delivery = None
        if after.assigned_responder:
            delivery = self._dispatcher.dispatch(
                NotificationEvent(
                    type=NotificationType.STATUS_UPDATE,
                    signal=after,
                    actor_id=actor_id,
                    notes=notes,
                    extra={"previous_status": before.status.value},
                ),
                [after.assigned_responder],
            )
        return CoordinatorResult(signal=after, delivery=delivery)

    def escalate(
        self,
        sos_id: str,
        requested_level: int,
        *,
        actor_id: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> CoordinatorResult:
        """Manual escalation to ``requested_level`` (never lower than current)."""
        max_level = self._config.max_escalation_level
        if isinstance(requested_level, bool) or not isinstance(requested_level, int):
            raise ValidationError("level must be an integer", field="level")
        if requested_level < 0 or requested_level > max_level:
            raise ValidationError(
                f"level must be between 0 and {max_level}",
                field="level", max_level=max_level,
            )

        def plan(current: SosSignal) -> Mutation:
            if current.is_terminal:
                raise ValidationError(
                    f"Cannot escalate a signal that is {current.status.value}",
                    field="status", current_status=current.status.value,
                )
            if requested_level < current.escalation_level:
                raise ValidationError(
                    f"Escalation level cannot decrease "
                    f"(current {current.escalation_level}, requested {requested_level})",
                    field="level", current_level=current.escalation_level,
                )
            now = self._clock()
            text = f"Manually escalated to level {requested_level}"
            if reason:
                text = f"{text}: {reason}"
            upgrade = self._config.escalation_upgrades_priority

            def mutate(s: SosSignal) -> None:
                s.escalation_level = requested_level
                if upgrade:
                    s.priority = upgraded_priority(s.priority, requested_level)
                s.add_note(actor_id, text, now)

            return mutate

        before, after, replayed = self._apply(
            "escalate", sos_id, actor_id,
            {"level": requested_level, "reason": reason},
            expected_version, plan,
        )
        if replayed:
            return CoordinatorResult(signal=after, replayed=True)

        logger.warning(
            "SOS %s manually escalated %d → %d by %s",
            after.id, before.escalation_level, after.escalation_level, actor_id,
            extra={"sos_id": after.id, "escalation_level": after.escalation_level},
        )

        delivery = self._dispatcher.dispatch(
            NotificationEvent(
                type=NotificationType.ESCALATION,
                signal=after,
                actor_id=actor_id,
                notes=reason,
                extra={
                    "previous_level": before.escalation_level,
                    "escalation_level": after.escalation_level,
                    "automatic": False,
                },
            ),
            escalation_targets(after, self._directory, self._config),
        )
        return CoordinatorResult(signal=after, delivery=delivery)

    # ── internals ──

    def _apply(
        self,
        operation: str,
        sos_id: str,
        actor_id: str,
        args: Dict[str, Any],
        expected_version: Optional[int],
        plan: Callable[[SosSignal], Mutation],
    ) -> Tuple[SosSignal, SosSignal, bool]:
        """Read, check version, validate, write. Returns (before, after, replayed)."""
        if not actor_id:
            raise ValidationError("actor_id is required", field="actor_id")

        current = self._repo.get(sos_id)
        version = current.version if expected_version is None else expected_version
        fingerprint = request_fingerprint(operation, actor_id, args, version)

        if current.version != version:
            if self._is_replay(current, fingerprint, version):
                return current, current, True
            raise ConflictError(
                sos_id, expected_version=version, current_version=current.version,
            )

        mutation = plan(current)

        def apply(s: SosSignal) -> None:
            mutation(s)
            s.last_request = fingerprint

        try:
            after = self._repo.conditional_update(sos_id, version, apply)
        except ConflictError:
            latest = self._repo.get(sos_id)
            if self._is_replay(latest, fingerprint, version):
                return latest, latest, True
            logger.info(
                "%s on %s conflicted at version %d", operation, sos_id, version,
                extra={"sos_id": sos_id},
            )
            raise
        return current, after, False

    @staticmethod
    def _is_replay(current: SosSignal, fingerprint: str, version: int) -> bool:
        replay = current.last_request == fingerprint and current.version == version + 1
        if replay:
            logger.info(
                "Replayed request on %s already applied at version %d",
                current.id, current.version,
                extra={"sos_id": current.id},
            )
        return replay

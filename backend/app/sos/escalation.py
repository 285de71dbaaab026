"""
escalation.py — Time-based automatic escalation of unattended signals.

═══════════════════════════════════════════════════════════════════════════
SWEEP RULE
═══════════════════════════════════════════════════════════════════════════

For every signal with status ∈ {pending, acknowledged}:

    elapsed   = now − created_at
    threshold = thresholds[priority]            (configured, per priority)

    elapsed ≥ threshold × (level + 1)  and  level < max_level
        → level + 1 (exactly one step per pass), auto_escalated_at = now

    Example (critical, threshold 10 min, max 2):
        T0+11  → level 1
        T0+15  → unchanged (next step due at T0+20)
        T0+21  → level 2
        T0+40  → unchanged (already at max)

Writes go through the same conditional update as manual operations. A
lost race (ConflictError) re-reads the record and re-evaluates it, up to
``escalation_max_retries`` times in the same pass, so a concurrent manual
escalation is never overwritten and never double-counted.

═══════════════════════════════════════════════════════════════════════════
FAN-OUT BY LEVEL
═══════════════════════════════════════════════════════════════════════════

    Level    Notified
    ─────    ─────────────────────────────────────────────────────────
    0        assigned responder (if any)
    1        + assigned responder's team lead
               (duty supervisors when unassigned or no lead on file)
    ≥ 2      + every available responder within the regional radius

Priority upgrade (optional):
    level 1   low / medium → high
    level ≥ 2 anything     → critical
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from backend.app.core.config import TriageConfig
from backend.app.core.errors import ConflictError
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.notifications.models import (
    DeliveryReport,
    NotificationEvent,
    NotificationType,
)
from backend.app.sos.models import (
    ESCALATION_ELIGIBLE,
    Priority,
    SosSignal,
    utcnow,
)
from backend.app.sos.repository import SignalFilter, SignalRepository
from backend.app.sos.responders import ResponderDirectory

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


# ═══════════════════════════════════════════════════════════════════════════
# Shared Rules (also used by manual escalation)
# ═══════════════════════════════════════════════════════════════════════════

def upgraded_priority(priority: Priority, level: int) -> Priority:
    """Priority after reaching ``level``; never lowers it."""
    if level >= 2:
        return Priority.CRITICAL
    if level == 1 and priority < Priority.HIGH:
        return Priority.HIGH
    return priority


def escalation_targets(
    signal: SosSignal,
    directory: ResponderDirectory,
    config: TriageConfig,
) -> List[str]:
    """Responder ids to notify for the signal's current escalation level."""
    targets: List[str] = []
    assigned = signal.assigned_responder
    if assigned:
        targets.append(assigned)

    if signal.escalation_level >= 1:
        lead = directory.team_lead_of(assigned) if assigned else None
        if lead:
            targets.append(lead)
        else:
            targets.extend(directory.duty_supervisors())

    if signal.escalation_level >= 2:
        targets.extend(directory.available_near(
            signal.location.lat,
            signal.location.lng,
            config.escalation_region_radius_km,
        ))

    unique: List[str] = []
    for t in targets:
        if t not in unique:
            unique.append(t)
    return unique


# ═══════════════════════════════════════════════════════════════════════════
# Sweep Results
# ═══════════════════════════════════════════════════════════════════════════

class SweepOutcome(str, Enum):
    ESCALATED = "escalated"
    SKIPPED   = "skipped"    # not due, already at max, or no longer eligible
    FAILED    = "failed"     # error or retries exhausted; logged, sweep continues


@dataclass
class SignalSweepResult:
    sos_id: str
    outcome: SweepOutcome
    previous_level: int
    new_level: int
    reason: str = ""
    attempts: int = 1
    delivery: Optional[DeliveryReport] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "sos_id": self.sos_id,
            "outcome": self.outcome.value,
            "previous_level": self.previous_level,
            "new_level": self.new_level,
            "reason": self.reason,
            "attempts": self.attempts,
        }
        if self.delivery is not None:
            d["notifications"] = self.delivery.to_dict()
        return d


@dataclass
class SweepReport:
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: List[SignalSweepResult] = field(default_factory=list)

    def _count(self, outcome: SweepOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def examined(self) -> int:
        return len(self.results)

    @property
    def escalated(self) -> int:
        return self._count(SweepOutcome.ESCALATED)

    @property
    def skipped(self) -> int:
        return self._count(SweepOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(SweepOutcome.FAILED)

    def result_for(self, sos_id: str) -> Optional[SignalSweepResult]:
        return next((r for r in self.results if r.sos_id == sos_id), None)

    def to_dict(self, include_skipped: bool = False) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "examined": self.examined,
            "escalated": self.escalated,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": [
                r.to_dict() for r in self.results
                if include_skipped or r.outcome != SweepOutcome.SKIPPED
            ],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class EscalationEngine:
    """Runs escalation sweeps against the repository."""

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

    def skip_reason(self, signal: SosSignal, now: datetime) -> Optional[str]:
        """Why ``signal`` is not due for escalation at ``now`` (None if due)."""
        if signal.status not in ESCALATION_ELIGIBLE:
            return f"status is {signal.status.value}"
        if signal.escalation_level >= self._config.max_escalation_level:
            return "already at max escalation level"
        threshold = self._config.threshold_for(signal.reported_priority.label)
        due_at = signal.created_at + threshold * (signal.escalation_level + 1)
        if now < due_at:
            return f"next escalation due at {due_at.isoformat()}"
        return None

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        One pass over every eligible signal.

        Per-signal errors are logged and recorded as FAILED; they never
        abort the pass.
        """
        now = now or self._clock()
        report = SweepReport(started_at=now)

        candidates = self._repo.find(SignalFilter(statuses=ESCALATION_ELIGIBLE))
        for signal in candidates:
            try:
                result = self._process(signal, now)
            except Exception as exc:
                logger.exception(
                    "Escalation of %s failed: %s", signal.id, exc,
                    extra={"sos_id": signal.id},
                )
                result = SignalSweepResult(
                    sos_id=signal.id,
                    outcome=SweepOutcome.FAILED,
                    previous_level=signal.escalation_level,
                    new_level=signal.escalation_level,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            report.results.append(result)

        report.completed_at = self._clock()
        log = logger.info if report.escalated or report.failed else logger.debug
        log(
            "Escalation sweep: %d examined, %d escalated, %d skipped, %d failed",
            report.examined, report.escalated, report.skipped, report.failed,
        )
        return report

    def _process(self, signal: SosSignal, now: datetime) -> SignalSweepResult:
        current = signal
        original_level = signal.escalation_level
        max_attempts = self._config.escalation_max_retries + 1

        for attempt in range(1, max_attempts + 1):
            reason = self.skip_reason(current, now)
            if reason:
                return SignalSweepResult(
                    sos_id=current.id,
                    outcome=SweepOutcome.SKIPPED,
                    previous_level=original_level,
                    new_level=current.escalation_level,
                    reason=reason,
                    attempts=attempt,
                )

            new_level = current.escalation_level + 1
            waited = int((now - current.created_at).total_seconds() // 60)
            upgrade = self._config.escalation_upgrades_priority

            def mutate(s: SosSignal) -> None:
                s.escalation_level = new_level
                s.auto_escalated_at = now
                if upgrade:
                    s.priority = upgraded_priority(s.priority, new_level)
                s.add_note(
                    SYSTEM_ACTOR,
                    f"Auto-escalated to level {new_level} after {waited} minutes "
                    f"without resolution",
                    now,
                )

            try:
                after = self._repo.conditional_update(current.id, current.version, mutate)
            except ConflictError as exc:
                logger.info(
                    "Escalation of %s lost a race (version %s → %s), re-reading",
                    current.id, exc.expected_version, exc.current_version,
                    extra={"sos_id": current.id},
                )
                current = self._repo.get(current.id)
                continue

            logger.warning(
                "SOS %s auto-escalated to level %d (%s, waited %d min)",
                after.id, new_level, after.priority.label, waited,
                extra={"sos_id": after.id, "escalation_level": new_level},
            )
            delivery = self._dispatcher.dispatch(
                NotificationEvent(
                    type=NotificationType.ESCALATION,
                    signal=after,
                    actor_id=SYSTEM_ACTOR,
                    notes=f"Automatic escalation after {waited} minutes",
                    extra={
                        "previous_level": new_level - 1,
                        "escalation_level": new_level,
                        "automatic": True,
                    },
                ),
                escalation_targets(after, self._directory, self._config),
            )
            return SignalSweepResult(
                sos_id=after.id,
                outcome=SweepOutcome.ESCALATED,
                previous_level=new_level - 1,
                new_level=new_level,
                attempts=attempt,
                delivery=delivery,
            )

        return SignalSweepResult(
            sos_id=current.id,
            outcome=SweepOutcome.FAILED,
            previous_level=original_level,
            new_level=current.escalation_level,
            reason=f"gave up after {max_attempts} conflicting writes",
            attempts=max_attempts,
        )


def escalation_stats(
    repository: SignalRepository,
    since: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Escalation figures for signals created at or after ``since``.

    ``minutes_to_auto_escalation`` averages created_at → auto_escalated_at
    over signals the sweep has touched.
    """
    signals = repository.find(SignalFilter(created_after=since))
    by_level: Dict[int, int] = {}
    waits: List[float] = []
    for s in signals:
        by_level[s.escalation_level] = by_level.get(s.escalation_level, 0) + 1
        if s.auto_escalated_at is not None:
            waits.append((s.auto_escalated_at - s.created_at).total_seconds() / 60.0)

    escalated = sum(n for level, n in by_level.items() if level > 0)
    return {
        "total_signals": len(signals),
        "escalated": escalated,
        "auto_escalated": len(waits),
        "by_level": {str(level): by_level[level] for level in sorted(by_level)},
        "minutes_to_auto_escalation": round(sum(waits) / len(waits), 1) if waits else None,
    }


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class EscalationScheduler:
    """
    One long-lived asyncio task running ``engine.sweep`` on an interval.

    The sweep itself is blocking (repository + channel pool), so it runs in
    a worker thread via ``asyncio.to_thread``.

    Usage:
        scheduler = EscalationScheduler(engine, interval_seconds=60)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, engine: EscalationEngine, interval_seconds: float = 60.0):
        self._engine = engine
        self._interval = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_report: Optional[SweepReport] = None
        self._last_error: Optional[str] = None
        self._runs = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self._last_report

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def runs(self) -> int:
        return self._runs

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="escalation-sweep")
        logger.info("Escalation scheduler started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Escalation scheduler stopped")

    async def run_once(self) -> SweepReport:
        report = await asyncio.to_thread(self._engine.sweep)
        self._last_report = report
        self._last_error = None
        self._runs += 1
        return report

    async def _run(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self._last_error = str(exc)
                logger.exception("Escalation sweep error: %s", exc)
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

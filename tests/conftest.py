"""Shared pytest fixtures: fake clock, responder directory, engines, API client."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from backend.app.core.config import TriageConfig
from backend.app.core.services import build_services
from backend.app.main import create_app
from backend.app.notifications.dispatcher import NotificationDispatcher
from backend.app.notifications.models import (
    ChannelAttempt,
    ChannelName,
    DeliveryOutcome,
    Notification,
)
from backend.app.notifications.store import NotificationStore
from backend.app.sos.coordinator import AssignmentCoordinator
from backend.app.sos.escalation import EscalationEngine
from backend.app.sos.models import Location, Priority, SosSignal
from backend.app.sos.repository import InMemorySignalRepository
from backend.app.sos.responders import InMemoryResponderDirectory, ResponderContact
from backend.app.spatial.radius_utils import Coordinate


# Colombo Fort (6.927°N, 79.861°E)
COLOMBO_LAT = 6.927
COLOMBO_LNG = 79.861

# Kandy, ~95 km away
KANDY_LAT = 7.29
KANDY_LNG = 80.63

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class RecordingSender:
    """Channel sender stand-in: records calls, optionally fails or hangs."""

    def __init__(
        self,
        channel: ChannelName,
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.channel = channel
        self.error = error
        self.delay = delay
        self.calls: List[Tuple[str, Notification]] = []
        self._lock = threading.Lock()

    def __call__(self, notification, contact, *, timeout_seconds=None) -> ChannelAttempt:
        with self._lock:
            self.calls.append((contact.responder_id, notification))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        now = datetime.now(timezone.utc)
        return ChannelAttempt(
            channel=self.channel,
            responder_id=contact.responder_id,
            outcome=DeliveryOutcome.DELIVERED,
            attempted_at=now,
            completed_at=now,
        )

    @property
    def recipients(self) -> List[str]:
        with self._lock:
            return [rid for rid, _ in self.calls]


def _make_signal(
    *,
    lat: float = COLOMBO_LAT,
    lng: float = COLOMBO_LNG,
    priority: Priority = Priority.MEDIUM,
    created_at: datetime = T0,
    message: str = "Trapped on the roof, water rising",
    **overrides,
) -> SosSignal:
    """Create a pending test signal."""
    return SosSignal(
        reporter_id=overrides.pop("reporter_id", "citizen-1"),
        location=Location(lat=lat, lng=lng),
        message=message,
        priority=priority,
        created_at=created_at,
        updated_at=created_at,
        **overrides,
    )


def _make_contacts() -> List[ResponderContact]:
    return [
        ResponderContact(
            responder_id="R-1", name="Nimal",
            email="nimal@example.org", phone="+94770000001", push_token="tok-r1-abcdefghijkl",
            team_lead_id="L-1", location=Coordinate(COLOMBO_LAT, COLOMBO_LNG),
        ),
        ResponderContact(
            responder_id="R-2", name="Kumari", email="kumari@example.org",
        ),
        ResponderContact(
            responder_id="L-1", name="Lead Perera",
            email="lead@example.org", phone="+94770000009",
        ),
        ResponderContact(
            responder_id="SUP-1", name="Duty Supervisor",
            email="duty@example.org", supervisor=True,
        ),
        ResponderContact(
            responder_id="NEAR-1", name="Boat Team",
            phone="+94770000020", location=Coordinate(6.935, 79.870),
        ),
        ResponderContact(
            responder_id="FAR-1", name="Hill Team",
            email="hill@example.org", location=Coordinate(KANDY_LAT, KANDY_LNG),
        ),
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> TriageConfig:
    return TriageConfig(channel_timeout_seconds=1.0, sweep_interval_seconds=3600.0)


@pytest.fixture
def directory() -> InMemoryResponderDirectory:
    return InMemoryResponderDirectory(_make_contacts())


@pytest.fixture
def senders():
    return {channel: RecordingSender(channel) for channel in ChannelName}


@pytest.fixture
def repository(clock, config) -> InMemorySignalRepository:
    return InMemorySignalRepository(
        clock=clock, max_escalation_level=config.max_escalation_level,
    )


@pytest.fixture
def store(clock, config) -> NotificationStore:
    return NotificationStore(limit=config.inbox_limit, clock=clock)


@pytest.fixture
def dispatcher(store, directory, config, senders):
    d = NotificationDispatcher(store, directory, config, senders=senders)
    yield d
    d.shutdown(wait=True)


@pytest.fixture
def coordinator(repository, directory, dispatcher, config, clock) -> AssignmentCoordinator:
    return AssignmentCoordinator(repository, directory, dispatcher, config, clock=clock)


@pytest.fixture
def engine(repository, directory, dispatcher, config, clock) -> EscalationEngine:
    return EscalationEngine(repository, directory, dispatcher, config, clock=clock)


@pytest.fixture
def services(config, clock, directory, senders):
    s = build_services(config, clock=clock, directory=directory, senders=senders)
    yield s
    s.close()


@pytest.fixture
def client(services):
    app = create_app(services, run_scheduler=False)
    with TestClient(app) as c:
        yield c

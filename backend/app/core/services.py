"""
Service container — wires the triage engines together once per process.

The FastAPI lifespan builds a TriageServices bundle and parks it on
``app.state.services``; route handlers receive it via ``get_services``.

Usage:
    services = build_services(TriageConfig.from_settings(settings))
    result = services.coordinator.assign("SOS-1A2B3C", "R-7", actor_id="admin-1")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from fastapi import Request

from backend.app.core.config import TriageConfig
from backend.app.notifications.dispatcher import ChannelSender, NotificationDispatcher
from backend.app.notifications.models import ChannelName
from backend.app.notifications.store import NotificationStore
from backend.app.sos.coordinator import AssignmentCoordinator
from backend.app.sos.escalation import EscalationEngine, EscalationScheduler
from backend.app.sos.models import utcnow
from backend.app.sos.repository import InMemorySignalRepository, SignalRepository
from backend.app.sos.responders import (
    InMemoryResponderDirectory,
    ResponderDirectory,
    load_directory,
)

logger = logging.getLogger(__name__)


def _default_directory(config: TriageConfig) -> InMemoryResponderDirectory:
    if config.responder_directory_file:
        return load_directory(config.responder_directory_file)
    logger.warning(
        "RESPONDER_DIRECTORY_FILE is not set; the responder directory is empty "
        "and every assignment will be rejected",
    )
    return InMemoryResponderDirectory()


@dataclass
class TriageServices:
    config: TriageConfig
    repository: SignalRepository
    store: NotificationStore
    directory: ResponderDirectory
    dispatcher: NotificationDispatcher
    coordinator: AssignmentCoordinator
    engine: EscalationEngine
    scheduler: EscalationScheduler
    clock: Callable[[], datetime] = utcnow

    def close(self) -> None:
        self.dispatcher.shutdown(wait=False)


def build_services(
    config: TriageConfig,
    *,
    clock: Callable[[], datetime] = utcnow,
    repository: Optional[SignalRepository] = None,
    directory: Optional[ResponderDirectory] = None,
    senders: Optional[Mapping[ChannelName, ChannelSender]] = None,
) -> TriageServices:
    """Assemble every engine around one repository, store and directory."""
    if repository is None:
        repository = InMemorySignalRepository(
            clock=clock, max_escalation_level=config.max_escalation_level,
        )
    if directory is None:
        directory = _default_directory(config)
    store = NotificationStore(limit=config.inbox_limit, clock=clock)
    dispatcher = NotificationDispatcher(store, directory, config, senders=senders)
    coordinator = AssignmentCoordinator(
        repository, directory, dispatcher, config, clock=clock,
    )
    engine = EscalationEngine(repository, directory, dispatcher, config, clock=clock)
    scheduler = EscalationScheduler(engine, interval_seconds=config.sweep_interval_seconds)

    logger.info(
        "Triage services ready: channels=%s, max_level=%d, sweep every %.0fs",
        ",".join(dispatcher.enabled_channels) or "none",
        config.max_escalation_level,
        config.sweep_interval_seconds,
    )
    return TriageServices(
        config=config,
        repository=repository,
        store=store,
        directory=directory,
        dispatcher=dispatcher,
        coordinator=coordinator,
        engine=engine,
        scheduler=scheduler,
        clock=clock,
    )


def get_services(request: Request) -> TriageServices:
    """FastAPI dependency: the container built by the app lifespan."""
    return request.app.state.services

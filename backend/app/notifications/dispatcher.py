"""
dispatcher.py — Fan a triage event out to responder inboxes and channels.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  NotificationEvent  │  assignment / withdrawal / status_update /
    │  + target ids       │  escalation, built from the written signal
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. In-app write    │  NotificationStore.store() for every target,
    │     (synchronous)   │  done before dispatch() returns
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Channel         │  disabled channel         → skipped
    │     selection       │  responder not in dir.    → skipped
    │                     │  no address for channel   → skipped
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Concurrent send │  one pool task per (target, channel)
    │                     │  retryable failure → retried with backoff
    │                     │  exceptions → failed (never raised)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Bounded wait    │  wait ≤ channel_timeout_seconds for all tasks;
    │                     │  unfinished → failed ("timed out"), left to
    │                     │  finish in the background
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. DeliveryReport  │  per target: notification id + per-channel
    │                     │  delivered / failed / skipped
    └─────────────────────┘

A hanging or failing channel never blocks the in-app write or another
channel, and never turns into an exception for the caller.
"""

from __future__ import annotations

import logging
import time
from concurrent import futures
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from backend.app.core.config import ChannelProviderConfig, TriageConfig
from backend.app.core.errors import ChannelDeliveryFailure, NotFoundError
from backend.app.notifications.channels import email_alert, sms_gateway, web_push
from backend.app.notifications.models import (
    ChannelAttempt,
    ChannelName,
    DeliveryOutcome,
    DeliveryReport,
    Notification,
    NotificationEvent,
    TargetDeliveryRecord,
)
from backend.app.notifications.store import NotificationStore
from backend.app.sos.responders import ResponderContact, ResponderDirectory

logger = logging.getLogger(__name__)

# sender(notification, contact, timeout_seconds=...) → ChannelAttempt
ChannelSender = Callable[..., ChannelAttempt]


# ═══════════════════════════════════════════════════════════════════════════
# Channel Sender Registry
# ═══════════════════════════════════════════════════════════════════════════

def default_senders(providers: ChannelProviderConfig) -> Dict[ChannelName, ChannelSender]:
    """Bind each channel backend to its configured provider."""
    return {
        ChannelName.EMAIL: partial(
            email_alert.send,
            provider=providers.email_provider,
            smtp_host=providers.smtp_host,
            smtp_port=providers.smtp_port,
            smtp_user=providers.smtp_user,
            smtp_password=providers.smtp_password,
            from_address=providers.email_from_address,
        ),
        ChannelName.SMS: partial(
            sms_gateway.send,
            provider=providers.sms_provider,
            gateway_url=providers.sms_gateway_url,
            api_key=providers.sms_api_key,
        ),
        ChannelName.PUSH: partial(
            web_push.send,
            provider=providers.push_provider,
            gateway_url=providers.push_gateway_url,
            server_key=providers.push_server_key,
        ),
    }


def _skipped(channel: ChannelName, responder_id: str, reason: str) -> ChannelAttempt:
    now = datetime.now(timezone.utc)
    return ChannelAttempt(
        channel=channel,
        responder_id=responder_id,
        outcome=DeliveryOutcome.SKIPPED,
        attempted_at=now,
        completed_at=now,
        error_message=reason,
    )


def _failed(
    channel: ChannelName,
    responder_id: str,
    reason: str,
    attempted_at: Optional[datetime] = None,
) -> ChannelAttempt:
    now = datetime.now(timezone.utc)
    return ChannelAttempt(
        channel=channel,
        responder_id=responder_id,
        outcome=DeliveryOutcome.FAILED,
        attempted_at=attempted_at or now,
        completed_at=now,
        error_message=reason,
    )


def _unique(ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for rid in ids:
        if rid and rid not in seen:
            seen.add(rid)
            ordered.append(rid)
    return ordered


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """
    Writes in-app notifications and drives external channel delivery.

    Parameters
    ----------
    store : NotificationStore
    directory : ResponderDirectory
    config : TriageConfig
        Enabled channels, channel timeout and retries, pool size, provider
        settings.
    senders : mapping of ChannelName → sender, optional
        Overrides the provider-bound backends (tests inject fakes here).
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: ResponderDirectory,
        config: TriageConfig,
        *,
        senders: Optional[Mapping[ChannelName, ChannelSender]] = None,
    ):
        self._store = store
        self._directory = directory
        self._timeout = config.channel_timeout_seconds
        self._retries = config.channel_retries
        self._retry_backoff = config.channel_retry_backoff_seconds
        self._enabled = frozenset(ChannelName(c) for c in config.enabled_channels)
        self._senders: Dict[ChannelName, ChannelSender] = dict(
            senders if senders is not None else default_senders(config.providers)
        )
        self._pool = ThreadPoolExecutor(
            max_workers=config.channel_workers,
            thread_name_prefix="sos-channel",
        )
        self._closed = False

    @property
    def enabled_channels(self) -> List[str]:
        return sorted(c.value for c in self._enabled)

    @property
    def is_running(self) -> bool:
        return not self._closed

    def dispatch(
        self,
        event: NotificationEvent,
        target_responder_ids: Iterable[str],
    ) -> DeliveryReport:
        """
        Deliver ``event`` to every target.

        Returns once every in-app notification is stored and every channel
        task has finished or hit the channel timeout.
        """
        report = DeliveryReport(event_type=event.type, sos_id=event.signal.id)
        targets = _unique(target_responder_ids)

        pending: Dict[futures.Future, Tuple[TargetDeliveryRecord, ChannelName, datetime]] = {}

        for responder_id in targets:
            # ── Step 1: in-app write ──
            draft = event.build_notification()
            notification_id = self._store.store(responder_id, draft)
            notification = replace(draft, id=notification_id)
            record = TargetDeliveryRecord(
                responder_id=responder_id,
                notification_id=notification_id,
            )
            report.records.append(record)

            # ── Step 2: channel selection ──
            contact = self._lookup(responder_id)
            for channel in ChannelName:
                reason = self._skip_reason(channel, contact)
                if reason:
                    record.attempts[channel] = _skipped(channel, responder_id, reason)
                    continue

                # ── Step 3: concurrent send ──
                started = datetime.now(timezone.utc)
                try:
                    future = self._pool.submit(
                        self._send_one, channel, notification, contact,
                    )
                except RuntimeError as exc:
                    # pool already shut down
                    record.attempts[channel] = _failed(channel, responder_id, str(exc))
                    continue
                pending[future] = (record, channel, started)

        # ── Step 4: bounded wait ──
        if pending:
            done, not_done = futures.wait(pending, timeout=self._timeout)
            for future in done:
                record, channel, _ = pending[future]
                record.attempts[channel] = future.result()
            for future in not_done:
                record, channel, started = pending[future]
                future.cancel()
                logger.warning(
                    "[%s] Delivery to %s timed out after %.1fs",
                    channel.value.upper(), record.responder_id, self._timeout,
                    extra={
                        "channel": channel.value,
                        "responder_id": record.responder_id,
                        "sos_id": event.signal.id,
                    },
                )
                record.attempts[channel] = _failed(
                    channel, record.responder_id,
                    f"timed out after {self._timeout:g}s", started,
                )

        # ── Step 5: report ──
        for record in report.records:
            record.attempts = {c: record.attempts[c] for c in ChannelName}
        report.completed_at = datetime.now(timezone.utc)

        summary = report.channel_summary()
        logger.info(
            "Dispatched %s for %s to %d responders: %s",
            event.type.value, event.signal.id, len(targets),
            ", ".join(
                f"{ch}={counts['delivered']}/{counts['failed']}/{counts['skipped']}"
                for ch, counts in summary.items()
            ),
            extra={"sos_id": event.signal.id},
        )
        return report

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting channel tasks; queued tasks are cancelled."""
        self._closed = True
        self._pool.shutdown(wait=wait, cancel_futures=True)

    # ── internals ──

    def _lookup(self, responder_id: str) -> Optional[ResponderContact]:
        try:
            return self._directory.get_contact(responder_id)
        except NotFoundError:
            logger.warning(
                "Responder %s not in directory; in-app notification only",
                responder_id,
                extra={"responder_id": responder_id},
            )
            return None

    def _skip_reason(
        self, channel: ChannelName, contact: Optional[ResponderContact],
    ) -> Optional[str]:
        if channel not in self._enabled:
            return "Channel not enabled"
        if channel not in self._senders:
            return "No sender configured"
        if contact is None:
            return "Responder not in directory"
        if not contact.address_for(channel.value):
            return f"No {channel.value} address on file"
        return None

    def _send_one(
        self,
        channel: ChannelName,
        notification: Notification,
        contact: ResponderContact,
    ) -> ChannelAttempt:
        """
        Run one channel send, retrying retryable failures.

        A retry is only started if its backoff still ends inside the channel
        timeout; past that the dispatcher has already reported the channel.
        """
        started = datetime.now(timezone.utc)
        deadline = time.monotonic() + self._timeout
        max_tries = self._retries + 1

        for attempt in range(1, max_tries + 1):
            try:
                result = self._senders[channel](
                    notification, contact, timeout_seconds=self._timeout,
                )
                return replace(result, tries=attempt)
            except ChannelDeliveryFailure as exc:
                delay = self._retry_backoff * attempt
                if exc.retryable and attempt < max_tries and time.monotonic() + delay < deadline:
                    logger.info(
                        "[%s] Try %d/%d for %s failed (%s), retrying in %.1fs",
                        channel.value.upper(), attempt, max_tries,
                        contact.responder_id, exc.reason, delay,
                        extra={"channel": channel.value, "responder_id": contact.responder_id},
                    )
                    time.sleep(delay)
                    continue
                logger.warning(
                    "[%s] Failed for %s after %d tries: %s",
                    channel.value.upper(), contact.responder_id, attempt, exc.reason,
                    extra={"channel": channel.value, "responder_id": contact.responder_id},
                )
                return replace(
                    _failed(channel, contact.responder_id, str(exc), started), tries=attempt,
                )
            except Exception as exc:
                logger.error(
                    "[%s] Unexpected error for %s: %s",
                    channel.value.upper(), contact.responder_id, exc,
                    exc_info=True,
                    extra={"channel": channel.value, "responder_id": contact.responder_id},
                )
                return replace(
                    _failed(
                        channel, contact.responder_id,
                        f"{type(exc).__name__}: {exc}", started,
                    ),
                    tries=attempt,
                )

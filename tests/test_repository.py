"""
test_repository.py — In-memory signal repository and document conversion.

Run with:
    pytest tests/test_repository.py -v
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from backend.app.core.errors import ConflictError, NotFoundError, ValidationError
from backend.app.sos.models import Priority, SignalStatus
from backend.app.sos.repository import (
    SignalFilter,
    signal_from_document,
    signal_to_document,
)

from conftest import T0, _make_signal


class TestInsertAndGet:

    def test_insert_then_get(self, repository):
        s = repository.insert(_make_signal())
        fetched = repository.get(s.id)
        assert fetched.id == s.id
        assert fetched.location == s.location
        assert len(repository) == 1

    def test_get_returns_detached_copy(self, repository):
        s = repository.insert(_make_signal())
        fetched = repository.get(s.id)
        fetched.add_note("x", "not stored", T0)
        assert repository.get(s.id).notes == []

    def test_unknown_id(self, repository):
        with pytest.raises(NotFoundError) as exc:
            repository.get("SOS-NOPE")
        assert exc.value.details["sos_id"] == "SOS-NOPE"

    def test_duplicate_id_rejected(self, repository):
        s = repository.insert(_make_signal())
        with pytest.raises(ValidationError):
            repository.insert(_make_signal(id=s.id))

    def test_invalid_record_rejected(self, repository):
        with pytest.raises(ValidationError):
            repository.insert(_make_signal(assigned_responder="R-1"))


class TestFind:

    def test_newest_first(self, repository):
        old = repository.insert(_make_signal(created_at=T0))
        new = repository.insert(_make_signal(created_at=T0 + timedelta(minutes=5)))
        assert [s.id for s in repository.find()] == [new.id, old.id]

    def test_filter_by_status_and_priority(self, repository):
        crit = repository.insert(_make_signal(priority=Priority.CRITICAL))
        repository.insert(_make_signal(priority=Priority.LOW))
        found = repository.find(SignalFilter(
            statuses=frozenset({SignalStatus.PENDING}),
            priorities=frozenset({Priority.CRITICAL}),
        ))
        assert [s.id for s in found] == [crit.id]

    def test_time_window_bounds(self, repository):
        repository.insert(_make_signal(created_at=T0 - timedelta(hours=2)))
        edge = repository.insert(_make_signal(created_at=T0))
        repository.insert(_make_signal(created_at=T0 + timedelta(hours=1)))
        found = repository.find(SignalFilter(
            created_after=T0, created_before=T0 + timedelta(hours=1),
        ))
        assert [s.id for s in found] == [edge.id]


class TestConditionalUpdate:

    def test_applies_mutation_and_bumps_version(self, repository, clock):
        s = repository.insert(_make_signal())
        clock.advance(minutes=3)

        def mutate(sig):
            sig.priority = Priority.HIGH

        updated = repository.conditional_update(s.id, 1, mutate)
        assert updated.version == 2
        assert updated.priority == Priority.HIGH
        assert updated.updated_at == clock()

    def test_stale_version_conflicts(self, repository):
        s = repository.insert(_make_signal())
        repository.conditional_update(s.id, 1, lambda sig: None)
        with pytest.raises(ConflictError) as exc:
            repository.conditional_update(s.id, 1, lambda sig: None)
        assert exc.value.expected_version == 1
        assert exc.value.current_version == 2

    def test_unknown_id(self, repository):
        with pytest.raises(NotFoundError):
            repository.conditional_update("SOS-NOPE", 1, lambda sig: None)

    def test_invariant_violation_leaves_record_unchanged(self, repository):
        s = repository.insert(_make_signal(escalation_level=1))

        def lower(sig):
            sig.escalation_level = 0

        with pytest.raises(ValidationError):
            repository.conditional_update(s.id, 1, lower)
        stored = repository.get(s.id)
        assert stored.escalation_level == 1
        assert stored.version == 1

    def test_max_escalation_level_enforced(self, repository):
        s = repository.insert(_make_signal())

        def too_far(sig):
            sig.escalation_level = 3

        with pytest.raises(ValidationError):
            repository.conditional_update(s.id, 1, too_far)

    def test_concurrent_writers_exactly_one_wins(self, repository):
        s = repository.insert(_make_signal())
        barrier = threading.Barrier(8)
        wins, conflicts = [], []

        def writer(n):
            barrier.wait()
            try:
                repository.conditional_update(
                    s.id, 1, lambda sig: sig.add_note(f"w{n}", "hi", T0),
                )
                wins.append(n)
            except ConflictError:
                conflicts.append(n)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(conflicts) == 7
        assert repository.get(s.id).version == 2


class TestDocumentConversion:

    def test_document_uses_labels(self):
        doc = signal_to_document(_make_signal(priority=Priority.CRITICAL))
        assert doc["priority"] == "critical"
        assert doc["status"] == "pending"

    def test_missing_field_is_validation_error(self):
        doc = signal_to_document(_make_signal())
        del doc["reporter_id"]
        with pytest.raises(ValidationError) as exc:
            signal_from_document(doc)
        assert exc.value.details["field"] == "reporter_id"

    def test_naive_timestamp_rejected(self):
        doc = signal_to_document(_make_signal())
        doc["created_at"] = doc["created_at"].replace(tzinfo=None)
        with pytest.raises(ValidationError):
            signal_from_document(doc)

    def test_bad_priority_rejected(self):
        doc = signal_to_document(_make_signal())
        doc["priority"] = "urgent"
        with pytest.raises(ValidationError):
            signal_from_document(doc)

    def test_empty_message_rejected(self):
        with pytest.raises(ValidationError):
            signal_to_document(_make_signal(message="   "))

    def test_reported_priority_round_trip(self):
        s = _make_signal(priority=Priority.HIGH, reported_priority=Priority.LOW)
        doc = signal_to_document(s)
        assert doc["reported_priority"] == "low"
        assert signal_from_document(doc).reported_priority == Priority.LOW

    def test_reported_priority_falls_back_to_priority(self):
        doc = signal_to_document(_make_signal(priority=Priority.CRITICAL))
        del doc["reported_priority"]
        assert signal_from_document(doc).reported_priority == Priority.CRITICAL

    def test_bad_reported_priority_rejected(self):
        doc = signal_to_document(_make_signal())
        doc["reported_priority"] = "urgent"
        with pytest.raises(ValidationError):
            signal_from_document(doc)

"""
test_notification_store.py — Responder in-app inboxes.

Run with:
    pytest tests/test_notification_store.py -v
"""

from __future__ import annotations

import pytest

from backend.app.core.errors import NotFoundError
from backend.app.notifications.models import Notification, NotificationType
from backend.app.notifications.store import NotificationStore
from backend.app.sos.models import Priority

from conftest import FakeClock


def _make_notification(title: str = "New SOS assignment", sos_id: str = "SOS-1") -> Notification:
    return Notification(
        type=NotificationType.ASSIGNMENT,
        title=title,
        message="You have been assigned.",
        priority=Priority.HIGH,
        sos_id=sos_id,
        payload={"status": "acknowledged"},
        read=True,
    )


class TestStore:

    def test_store_returns_fresh_id_and_unread_entry(self, store, clock):
        draft = _make_notification()
        nid = store.store("R-1", draft)
        entries, unread = store.list("R-1")
        assert nid != draft.id
        assert entries[0].id == nid
        assert entries[0].read is False
        assert entries[0].created_at == clock()
        assert unread == 1

    def test_caller_object_untouched(self, store):
        draft = _make_notification()
        store.store("R-1", draft)
        assert draft.read is True

    def test_newest_first(self, store, clock):
        first = store.store("R-1", _make_notification("first"))
        clock.advance(seconds=1)
        second = store.store("R-1", _make_notification("second"))
        assert [n.id for n in store.list("R-1")[0]] == [second, first]

    def test_inboxes_are_separate(self, store):
        store.store("R-1", _make_notification())
        assert store.list("R-2") == ([], 0)

    def test_limit_drops_oldest(self):
        store = NotificationStore(limit=3, clock=FakeClock())
        ids = [store.store("R-1", _make_notification(f"n{i}")) for i in range(5)]
        entries, _ = store.list("R-1")
        assert [n.id for n in entries] == list(reversed(ids[2:]))

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            NotificationStore(limit=0)

    def test_list_returns_copies(self, store):
        nid = store.store("R-1", _make_notification())
        entries, _ = store.list("R-1")
        entries[0].read = True
        assert store.get("R-1", nid).read is False


class TestMarkRead:

    def test_mark_read(self, store):
        nid = store.store("R-1", _make_notification())
        result = store.mark_read("R-1", nid)
        assert result.read is True
        assert store.unread_count("R-1") == 0

    def test_idempotent(self, store):
        nid = store.store("R-1", _make_notification())
        store.store("R-1", _make_notification("other"))
        store.mark_read("R-1", nid)
        once = store.list("R-1")
        store.mark_read("R-1", nid)
        twice = store.list("R-1")
        assert [n.to_dict() for n in once[0]] == [n.to_dict() for n in twice[0]]
        assert once[1] == twice[1] == 1

    def test_unknown_id(self, store):
        with pytest.raises(NotFoundError) as exc:
            store.mark_read("R-1", "NTF-NOPE")
        assert exc.value.details["notification_id"] == "NTF-NOPE"

    def test_other_responders_entry_not_found(self, store):
        nid = store.store("R-1", _make_notification())
        with pytest.raises(NotFoundError):
            store.mark_read("R-2", nid)

    def test_mark_all_read(self, store):
        for i in range(3):
            store.store("R-1", _make_notification(f"n{i}"))
        assert store.mark_all_read("R-1") == 3
        assert store.mark_all_read("R-1") == 0
        assert store.unread_count("R-1") == 0


class TestDelete:

    def test_delete(self, store):
        nid = store.store("R-1", _make_notification())
        removed = store.delete("R-1", nid)
        assert removed.id == nid
        assert store.list("R-1") == ([], 0)
        assert store.total() == 0

    def test_delete_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.delete("R-1", "NTF-NOPE")

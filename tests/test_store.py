"""
Tests for MessageStore ordering, merging and unread accounting.
Run with: pytest tests/test_store.py
"""

from chatsync.models import Message, SenderRole
from chatsync.store import MessageStore

from conftest import at, make_message


def _ids(store, conv="room1"):
    return [m.id for m in store.get_ordered(conv)]


def test_ordering_by_created_at():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("c", 3))
    store.upsert(make_message("a", 1))
    store.upsert(make_message("b", 2))
    assert _ids(store) == ["a", "b", "c"]


def test_ties_keep_insertion_order():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("second", 1))
    store.upsert(make_message("first", 1))
    assert _ids(store) == ["second", "first"]


def test_upsert_same_record_is_idempotent():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("P1", 1))
    before = store.get_ordered("room1")
    store.upsert(make_message("P1", 1))
    assert store.get_ordered("room1") == before


def test_read_only_goes_up():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("P1", 1))
    assert store.mark_read("room1", ["P1"]) == ["P1"]
    store.upsert(make_message("P1", 1, read=False))
    assert store.get("P1").read
    store.update("P1", "room1", read=False)
    assert store.get("P1").read


def test_unread_counts_only_counterpart_records():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("v1", 1, role=SenderRole.VENDOR))
    store.upsert(make_message("a1", 2, role=SenderRole.ASSISTANT))
    store.upsert(make_message("c1", 3, role=SenderRole.CUSTOMER))
    assert store.unread_ids("room1") == ["v1", "a1"]
    store.mark_read("room1", ["v1", "c1"])
    assert store.unread_count("room1") == 1


def test_replace_keeps_slot_when_time_unchanged():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("a", 1))
    store.upsert(make_message("tmp", 1, role=SenderRole.CUSTOMER, provisional=True))
    store.upsert(make_message("b", 1))
    store.replace("tmp", make_message("P9", 1, role=SenderRole.CUSTOMER))
    assert _ids(store) == ["a", "P9", "b"]


def test_replace_reslots_on_new_timestamp():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("tmp", 0, role=SenderRole.CUSTOMER, provisional=True))
    store.upsert(make_message("a", 1))
    store.replace("tmp", make_message("P9", 2, role=SenderRole.CUSTOMER))
    assert _ids(store) == ["a", "P9"]


def test_replace_collapses_into_existing_id():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("tmp", 1, role=SenderRole.CUSTOMER, provisional=True))
    store.upsert(make_message("P1", 1, role=SenderRole.CUSTOMER))
    store.replace("tmp", make_message("P1", 1, role=SenderRole.CUSTOMER))
    assert _ids(store) == ["P1"]


def test_remove_provisional_never_touches_permanent():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("tmp", 1, provisional=True))
    store.upsert(make_message("P1", 2))
    removed = store.remove_provisional(lambda m: True)
    assert [m.id for m in removed] == ["tmp"]
    assert _ids(store) == ["P1"]


def test_evict_keeps_pending_provisional():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("P1", 1))
    pending = Message.new_provisional("room1", SenderRole.CUSTOMER, body="unsent", created_at=at(2))
    store.upsert(pending)
    assert store.evict("room1") == 1
    assert _ids(store) == [pending.id]
    store.evict("room1", keep_provisional=False)
    assert not store.has_conversation("room1")


def test_snapshots_are_immutable_tuples():
    store = MessageStore(SenderRole.CUSTOMER)
    store.upsert(make_message("P1", 1))
    snapshot = store.get_ordered("room1")
    assert isinstance(snapshot, tuple)
    store.upsert(make_message("P2", 2))
    assert len(snapshot) == 1

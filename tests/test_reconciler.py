"""
Tests for provisional → permanent reconciliation.
Run with: pytest tests/test_reconciler.py
"""

from chatsync.models import DeliveryState, Message, SenderRole
from chatsync.reconciler import IdentityReconciler, Outcome
from chatsync.store import MessageStore

from conftest import at, make_message


def _setup(heuristic=True, window=5.0):
    store = MessageStore(SenderRole.CUSTOMER)
    return store, IdentityReconciler(store, window_seconds=window, heuristic=heuristic)


def _send(rec, body="Hello", seconds=0.0):
    return rec.add_provisional(
        Message.new_provisional("room1", SenderRole.CUSTOMER, body=body, created_at=at(seconds))
    )


def _ids(store):
    return [m.id for m in store.get_ordered("room1")]


# ---------------------------------------------------------------------------
# Optimistic send confirmed within the window
# ---------------------------------------------------------------------------

def test_inbound_copy_replaces_provisional():
    store, rec = _setup()
    t1 = _send(rec)
    outcome, stored = rec.apply(make_message("P1", 1.5, role=SenderRole.CUSTOMER, body="Hello"))
    assert outcome == Outcome.RECONCILED
    assert stored.id == "P1"
    assert _ids(store) == ["P1"]

    # the late ack changes nothing
    rec.confirm(t1.id, "room1", "P1")
    assert _ids(store) == ["P1"]


def test_ack_then_inbound_copy():
    store, rec = _setup()
    t1 = _send(rec)
    confirmed = rec.confirm(t1.id, "room1", "P1", created_at=at(1))
    assert confirmed.id == "P1"
    assert confirmed.delivery == DeliveryState.SENT
    assert confirmed.client_key == t1.client_key

    outcome, _ = rec.apply(make_message("P1", 1, role=SenderRole.CUSTOMER, body="Hello"))
    assert outcome == Outcome.DUPLICATE
    assert _ids(store) == ["P1"]


def test_ack_after_inbound_was_appended_removes_provisional():
    store, rec = _setup(heuristic=False)
    t1 = _send(rec)
    rec.apply(make_message("P1", 1, role=SenderRole.CUSTOMER, body="Hello"))
    assert len(store.get_ordered("room1")) == 2

    rec.confirm(t1.id, "room1", "P1")
    assert _ids(store) == ["P1"]


def test_reapplying_permanent_record_is_idempotent():
    store, rec = _setup()
    incoming = make_message("P7", 2, body="from vendor")
    rec.apply(incoming)
    before = store.get_ordered("room1")
    outcome, _ = rec.apply(incoming)
    assert outcome == Outcome.DUPLICATE
    assert store.get_ordered("room1") == before


# ---------------------------------------------------------------------------
# Ambiguous cases
# ---------------------------------------------------------------------------

def test_identical_rapid_sends_match_in_order():
    store, rec = _setup()
    t1 = _send(rec, "ok", 0.0)
    t2 = _send(rec, "ok", 0.1)

    rec.apply(make_message("P1", 1.0, role=SenderRole.CUSTOMER, body="ok"))
    # redelivery of P1 must not consume T2
    outcome, _ = rec.apply(make_message("P1", 1.0, role=SenderRole.CUSTOMER, body="ok"))
    assert outcome == Outcome.DUPLICATE
    assert store.get(t2.id, "room1") is not None

    rec.apply(make_message("P2", 1.1, role=SenderRole.CUSTOMER, body="ok"))
    assert _ids(store) == ["P1", "P2"]
    assert store.get(t1.id, "room1") is None


def test_body_match_preferred_over_oldest():
    store, rec = _setup()
    _send(rec, "first", 0.0)
    t2 = _send(rec, "second", 0.2)
    rec.apply(make_message("P2", 1.0, role=SenderRole.CUSTOMER, body="second"))
    assert store.get(t2.id, "room1") is None
    assert [m.body for m in store.provisional("room1")] == ["first"]


def test_counterpart_record_never_matches_own_provisional():
    store, rec = _setup()
    t1 = _send(rec, "Hello")
    outcome, _ = rec.apply(make_message("V1", 0.5, role=SenderRole.VENDOR, body="Hello"))
    assert outcome == Outcome.APPENDED
    assert store.get(t1.id, "room1") is not None


def test_outside_window_appends():
    store, rec = _setup(window=5.0)
    _send(rec, "draft one", 0.0)
    outcome, _ = rec.apply(make_message("P1", 30.0, role=SenderRole.CUSTOMER, body="something else"))
    assert outcome == Outcome.APPENDED
    assert len(store.get_ordered("room1")) == 2


def test_old_record_with_same_body_does_not_take_pending_send():
    """History loaded after a send must not swallow it, even with identical text."""
    store, rec = _setup(window=5.0)
    t1 = _send(rec, "Hi", 3600.0)
    outcome, _ = rec.apply(make_message("P_OLD", 0.0, role=SenderRole.CUSTOMER, body="Hi"))
    assert outcome == Outcome.APPENDED
    assert _ids(store) == ["P_OLD", t1.id]

    failed = rec.mark_failed(t1.id, "room1")
    assert failed is not None
    assert failed.delivery == DeliveryState.FAILED


# ---------------------------------------------------------------------------
# Client idempotency keys
# ---------------------------------------------------------------------------

def test_client_key_reconciles_without_heuristic():
    store, rec = _setup(heuristic=False)
    t1 = _send(rec, "Hello ")
    incoming = make_message("P1", 9.0, role=SenderRole.CUSTOMER, body="Hello", client_key=t1.client_key)
    outcome, stored = rec.apply(incoming)
    assert outcome == Outcome.RECONCILED
    assert _ids(store) == ["P1"]
    assert rec.provisional_for_key(t1.client_key) is None
    assert rec.permanent_for(t1.id) == "P1"


def test_without_heuristic_no_guessing():
    store, rec = _setup(heuristic=False)
    _send(rec)
    assert rec.guess_pending("room1") is None
    outcome, _ = rec.apply(make_message("P1", 1, role=SenderRole.CUSTOMER, body="Hello"))
    assert outcome == Outcome.APPENDED


def test_mark_failed_keeps_record():
    store, rec = _setup()
    t1 = _send(rec)
    failed = rec.mark_failed(t1.id, "room1")
    assert failed.delivery == DeliveryState.FAILED
    assert _ids(store) == [t1.id]
    # a failed record is no longer a guess for untagged acks
    assert rec.guess_pending("room1") is None

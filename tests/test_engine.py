"""
End-to-end tests for ChatSyncEngine against the in-memory API and push fakes.
Run with: pytest tests/test_engine.py
"""

import logging

import pytest

from chatsync.engine import ChatSyncEngine
from chatsync.errors import AuthExpired, TransientNetworkError, ValidationError
from chatsync.models import ConversationMeta, DeliveryState, SenderRole
from chatsync.supervisor import ConnectionState

from conftest import settle, wire

FAST = {
    "polling": {"conversation_interval": 0.02, "list_interval": 0.05},
    "push": {"reconnect_delay": 0.005, "reconnect_delay_max": 0.01},
    "read_receipts": {"debounce": 0.02},
    "typing": {"timeout": 0.05, "idle": 0.05},
    "assistant": {"enabled": False, "reply_delay": 0.01},
}


def _engine(api, channel, role=SenderRole.CUSTOMER, assistant=False, **kwargs):
    cfg = {**FAST, "assistant": {**FAST["assistant"], "enabled": assistant}}
    local_id = "cust1" if role == SenderRole.CUSTOMER else "biz1"
    return ChatSyncEngine(api, channel, role, local_id, cfg=cfg, **kwargs)


def _events(engine, kind=None):
    seen = []
    engine.add_listener(lambda e: seen.append(e) if kind in (None, e.kind) else None)
    return seen


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_reconciles_to_permanent_id(api, channel):
    engine = _engine(api, channel)
    await engine.open_conversation("room1")
    events = _events(engine, "messages")

    stored = await engine.send("  Hello  ")
    assert stored.id == "P1"
    assert not stored.provisional
    assert stored.delivery == DeliveryState.SENT
    assert api.sent[0]["body"] == "Hello"
    assert events[0].payload["appended"][0].startswith("tmp_")
    assert events[1].payload["reconciled"] == ["P1"]

    # The poll copy of the same record does not duplicate it
    api.snapshots["room1"] = [wire("P1", 0, sender_type="USER", content="Hello")]
    await engine.poller.poll_conversation_once("room1", engine.merge.generation)
    assert [m.id for m in engine.messages()] == ["P1"]
    await engine.close()


@pytest.mark.asyncio
async def test_send_validation(api, channel):
    engine = _engine(api, channel)
    with pytest.raises(ValueError):
        await engine.send("no room open")

    await engine.open_conversation("room1")
    with pytest.raises(ValidationError):
        await engine.send("   ")
    assert api.sent == []
    await engine.close()


@pytest.mark.asyncio
async def test_failed_send_stays_visible_and_can_be_retried(api, channel):
    engine = _engine(api, channel)
    await engine.open_conversation("room1")
    errors = _events(engine, "error")

    api.send_error = TransientNetworkError("503")
    failed = await engine.send("Are you open?")
    assert failed.provisional
    assert failed.delivery == DeliveryState.FAILED
    assert [m.id for m in engine.messages()] == [failed.id]
    assert errors[0].payload["message_id"] == failed.id

    api.send_error = None
    sent = await engine.retry_send(failed.id)
    assert sent.id == "P1"
    assert sent.delivery == DeliveryState.SENT
    assert api.sent[0]["client_key"] == api.sent[1]["client_key"]
    assert [m.id for m in engine.messages()] == ["P1"]
    await engine.close()


@pytest.mark.asyncio
async def test_upload_failure_sends_placeholder(api, channel):
    engine = _engine(api, channel)
    await engine.open_conversation("room1")
    api.upload_error = TransientNetworkError("cdn down")

    await engine.send(filename="a.png", content=b"abc", media_type="image/png")
    attachment = api.sent[0]["attachment"]
    assert attachment.placeholder
    assert attachment.url == "local://a.png"
    assert attachment.byte_size == 3
    await engine.close()


@pytest.mark.asyncio
async def test_unacked_send_confirmed_by_push(api, channel):
    engine = _engine(api, channel)
    await engine.start()
    await settle(0.01)
    await engine.open_conversation("room1")

    api.ack = False
    pending = await engine.send("Hello")
    assert pending.provisional
    assert pending.delivery == DeliveryState.PENDING

    channel.deliver("message_sent", {
        "messageId": "P9", "chatRoomId": "room1", "clientKey": api.sent[0]["client_key"],
    })
    await settle(0.01)
    assert [m.id for m in engine.messages()] == ["P9"]
    await engine.close()


# ---------------------------------------------------------------------------
# Assistant relay
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_assistant_replies_when_vendor_offline(api, channel):
    engine = _engine(api, channel, assistant=True, business_context={"name": "Salon"})
    await engine.open_conversation("room1")

    await engine.send("Do you have Friday?")
    await settle(0.05)

    assert len(api.assistant_calls) == 1
    assert api.assistant_calls[0]["business_context"] == {"name": "Salon"}
    assert api.sent[1]["sender_role"] == SenderRole.ASSISTANT
    assert api.sent[1]["generated_by_assistant"]
    roles = [m.sender_role for m in engine.messages()]
    assert roles == [SenderRole.CUSTOMER, SenderRole.ASSISTANT]
    assert engine.assistant.slot_state("room1") == {"service": "haircut"}
    await engine.close()


@pytest.mark.asyncio
async def test_assistant_waits_for_silence_when_vendor_online(api, channel):
    engine = _engine(api, channel, assistant=True)
    api.metas = [ConversationMeta(id="room1", vendor_online=True)]
    await engine.poller.poll_list_once()
    await engine.open_conversation("room1")

    await engine.send("First")
    await engine.send("Second")
    await settle(0.05)
    assert len(api.assistant_calls) == 1
    await engine.close()


@pytest.mark.asyncio
async def test_vendor_sends_never_trigger_assistant(api, channel):
    engine = _engine(api, channel, role=SenderRole.VENDOR, assistant=True)
    await engine.open_conversation("room1")
    await engine.send("We're closed Sunday")
    await settle(0.05)
    assert api.assistant_calls == []
    await engine.close()


# ---------------------------------------------------------------------------
# Push + poll delivery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_push_drop_falls_back_to_poll_and_rejoins(api, channel):
    """Push drops mid-session; polling keeps the list whole and the room is re-joined."""
    engine = _engine(api, channel)
    await engine.start()
    await settle(0.01)
    await engine.open_conversation("room1")

    channel.deliver("receive_message", wire("V1", 1))
    await settle(0.01)
    channel.drop()
    api.snapshots["room1"] = [wire("V1", 1), wire("V2", 2)]
    await settle(0.06)
    assert [m.id for m in engine.messages()] == ["V1", "V2"]
    assert engine.connection_state == ConnectionState.CONNECTED
    assert channel.joined() == ["room1", "room1"]

    # A push record missing from later snapshots is kept
    channel.deliver("receive_message", {"message": wire("V3", 3)})
    await settle(0.05)
    assert [m.id for m in engine.messages()] == ["V1", "V2", "V3"]
    await engine.close()


@pytest.mark.asyncio
async def test_switching_conversation_discards_stale_poll(api, channel):
    engine = _engine(api, channel)
    await engine.open_conversation("room1")
    old_generation = engine.merge.generation
    await engine.open_conversation("room2")

    api.snapshots["room1"] = [wire("V1", 1)]
    result = await engine.poller.poll_conversation_once("room1", old_generation)
    assert result.discarded
    assert engine.messages("room1") == ()
    assert engine.supervisor.rooms == {"room2"}
    await engine.close()


@pytest.mark.asyncio
async def test_typing_and_read_events_from_push(api, channel):
    engine = _engine(api, channel)
    typing = _events(engine, "typing")
    await engine.start()
    await settle(0.01)
    await engine.open_conversation("room1")
    await engine.send("Hello")

    channel.deliver("user_typing", {"chatRoomId": "room1", "userId": "cust1"})
    channel.deliver("user_typing", {"chatRoomId": "room1", "userId": "biz1"})
    channel.deliver("messages_read", {"chatRoomId": "room1", "messageIds": ["P1"]})
    await settle(0.01)
    assert engine.typing_peers() == ["biz1"]
    assert engine.messages()[0].read

    await settle(0.08)
    assert engine.typing_peers() == []
    assert [e.payload["typing"] for e in typing] == [True, False]
    await engine.close()


@pytest.mark.asyncio
async def test_outbound_typing_frames(api, channel):
    engine = _engine(api, channel)
    await engine.start()
    await settle(0.01)
    await engine.open_conversation("room1")

    engine.input_activity()
    engine.input_activity()
    await settle(0.01)
    await engine.send("Hi")
    await settle(0.01)
    frames = [(e, d["chatRoomId"]) for e, d in channel.emitted if e in ("typing", "stop_typing")]
    assert frames == [("typing", "room1"), ("stop_typing", "room1")]
    await engine.close()


# ---------------------------------------------------------------------------
# Read receipts, history, visibility
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_visible_records_are_marked_read(api, channel):
    api.snapshots["room1"] = [wire("C1", 1, sender_type="USER"), wire("C2", 2, sender_type="USER")]
    engine = _engine(api, channel, role=SenderRole.VENDOR)
    observer = await engine.open_conversation("room1")
    assert observer.watched == ["C1", "C2"]
    assert engine.unread_count() == 2

    assert not engine.report_visibility("C1", 0.3)
    assert engine.report_visibility("C1", 0.9)
    assert engine.unread_count() == 1
    await settle(0.05)
    assert api.mark_read_calls == [("room1", ["C1"])]
    await engine.close()


@pytest.mark.asyncio
async def test_reload_history_keeps_pending_sends(api, channel):
    api.snapshots["room1"] = [wire("V1", 1)]
    engine = _engine(api, channel)
    await engine.open_conversation("room1")
    api.ack = False
    pending = await engine.send("still sending")

    count = await engine.reload_history()
    assert count == 2
    ids = [m.id for m in engine.messages()]
    assert "V1" in ids and pending.id in ids
    await engine.close()


@pytest.mark.asyncio
async def test_surface_hidden_pauses_polling(api, channel):
    engine = _engine(api, channel)
    await engine.start()
    await settle(0.01)
    await engine.open_conversation("room1")
    await settle(0.03)

    engine.set_surface_visible(False)
    await settle(0.03)
    before = api.fetch_count
    await settle(0.06)
    assert api.fetch_count == before

    engine.set_surface_visible(True)
    await settle(0.01)
    assert api.fetch_count > before
    assert engine.status()["surface_visible"]
    await engine.close()


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_auth_expired_halts_until_reauthenticated(api, channel):
    engine = _engine(api, channel)
    errors = _events(engine, "error")
    await engine.start()
    await settle(0.01)

    api.fetch_error = AuthExpired("token expired")
    await engine.open_conversation("room1")
    await settle(0.03)
    assert engine.auth_expired
    assert not engine.poller.running
    assert engine.connection_state == ConnectionState.DISCONNECTED
    assert errors[0].payload["error"] == "AuthExpired"
    assert engine.supervisor.halted
    assert not engine.retry_connection()
    assert engine.merge.ingest_message(wire("V1", 1)).discarded

    api.fetch_error = None
    api.snapshots["room1"] = [wire("V1", 1)]
    await engine.reauthenticate()
    await settle(0.03)
    assert not engine.auth_expired
    assert not engine.supervisor.halted
    assert engine.connection_state == ConnectionState.CONNECTED
    assert [m.id for m in engine.messages()] == ["V1"]
    await engine.close()


@pytest.mark.asyncio
async def test_listener_errors_are_logged_not_raised(api, channel, caplog):
    engine = _engine(api, channel)
    good = []

    def broken(event):
        raise RuntimeError("boom")

    engine.add_listener(broken)
    remove = engine.add_listener(good.append)
    await engine.open_conversation("room1")

    with caplog.at_level(logging.ERROR, logger="chatsync.engine"):
        await engine.send("Hello")
    assert "Listener failed" in caplog.text
    assert len(good) == 2

    remove()
    await engine.send("Again")
    assert len(good) == 2
    await engine.close()

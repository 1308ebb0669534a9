"""
Shared fakes for the chatsync tests: an in-memory ChatApi and PushChannel,
plus small record builders. No network, no wall-clock waits beyond a few
hundredths of a second.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.errors import TransientNetworkError
from chatsync.models import Attachment, ConversationMeta, Message, SenderRole
from chatsync.transport.base import AssistantReply, ChatApi, PollResult, SendAck
from chatsync.transport.push import PushChannel

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def make_message(
    msg_id: str,
    seconds: float = 0,
    role: SenderRole = SenderRole.VENDOR,
    body: str | None = "hi",
    conversation_id: str = "room1",
    read: bool = False,
    **kwargs,
) -> Message:
    return Message(
        id=msg_id,
        conversation_id=conversation_id,
        sender_role=role,
        created_at=at(seconds),
        body=body,
        read=read,
        **kwargs,
    )


def wire(msg_id: str, seconds: float = 0, sender_type: str = "BUSINESS", content: str = "hi",
         room: str = "room1", **extra) -> dict:
    data = {
        "_id": msg_id,
        "chatRoomId": room,
        "senderType": sender_type,
        "content": content,
        "createdAt": at(seconds).isoformat().replace("+00:00", "Z"),
        "read": False,
        "isAI": False,
    }
    data.update(extra)
    return data


async def settle(seconds: float = 0.0):
    """Let scheduled callbacks and tasks run."""
    await asyncio.sleep(seconds)
    await asyncio.sleep(0)


class FakeApi(ChatApi):
    """In-memory REST collaborator. Set the *_error attributes to inject failures."""

    def __init__(self):
        self.sent: list[dict] = []
        self.mark_read_calls: list[tuple[str, list[str]]] = []
        self.assistant_calls: list[dict] = []
        self.snapshots: dict[str, list] = {}
        self.metas: list[ConversationMeta] = []
        self.fetch_count = 0

        self.ack = True
        self.send_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.mark_read_error: Exception | None = None
        self.upload_error: Exception | None = None
        self.reply = AssistantReply(response_text="Happy to help!", slot_state={"service": "haircut"})
        self._next_id = 0

    async def send(self, conversation_id, sender_role, body=None, attachment=None,
                   client_key=None, generated_by_assistant=False):
        self.sent.append({
            "conversation_id": conversation_id,
            "sender_role": sender_role,
            "body": body,
            "attachment": attachment,
            "client_key": client_key,
            "generated_by_assistant": generated_by_assistant,
        })
        if self.send_error is not None:
            raise self.send_error
        if not self.ack:
            return None
        self._next_id += 1
        return SendAck(permanent_id=f"P{self._next_id}", client_key=client_key)

    async def fetch_messages(self, conversation_id):
        self.fetch_count += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return PollResult(conversation_id, list(self.snapshots.get(conversation_id, [])))

    async def fetch_conversations(self):
        return list(self.metas)

    async def mark_read(self, conversation_id, message_ids):
        self.mark_read_calls.append((conversation_id, list(message_ids)))
        if self.mark_read_error is not None:
            raise self.mark_read_error
        return len(message_ids)

    async def upload_attachment(self, filename, content, media_type):
        if self.upload_error is not None:
            raise self.upload_error
        return Attachment(url=f"https://cdn.example/{filename}", media_type=media_type, byte_size=len(content))

    async def assistant_reply(self, conversation_id, recent_messages, business_context, slot_state=None):
        self.assistant_calls.append({
            "conversation_id": conversation_id,
            "recent": list(recent_messages),
            "business_context": business_context,
            "slot_state": slot_state,
        })
        return self.reply


class FakePushChannel(PushChannel):
    """
    Push channel driven by the test. deliver() queues an inbound frame,
    drop() ends the current connection with a transient error.
    """

    def __init__(self):
        self.connected = False
        self.connects = 0
        self.connect_errors: list[Exception] = []
        self.emitted: list[tuple[str, dict]] = []
        self._queue: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        self.connects += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self.connected = True
        self._queue = asyncio.Queue()

    async def close(self):
        self.connected = False

    async def emit(self, event, data):
        if not self.connected:
            raise TransientNetworkError(f"not connected ({event})")
        self.emitted.append((event, data))

    async def events(self):
        queue = self._queue
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                self.connected = False
                raise item
            yield item

    def deliver(self, event: str, data: dict):
        self._queue.put_nowait((event, data))

    def drop(self, error: Exception | None = None):
        self._queue.put_nowait(error or TransientNetworkError("connection reset"))

    def joined(self) -> list[str]:
        return [d["roomId"] for e, d in self.emitted if e == "join_room"]


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def channel():
    return FakePushChannel()

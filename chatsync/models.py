"""
Data models for the sync engine.

Records are frozen dataclasses: the store hands out snapshots and every
mutation goes through dataclasses.replace(). Wire parsing accepts the field
names the marketplace API actually sends (_id, chatRoomId, senderType, image,
isAI) as well as the plain snake/camel variants.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from uuid import uuid4

from chatsync.errors import ValidationError

PROVISIONAL_PREFIX = "tmp_"


class SenderRole(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ASSISTANT = "assistant"


class DeliveryState(str, enum.Enum):
    """Outbound status of a locally authored record."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# senderType values seen on the wire → role
_ROLE_ALIASES = {
    "user": SenderRole.CUSTOMER,
    "customer": SenderRole.CUSTOMER,
    "business": SenderRole.VENDOR,
    "vendor": SenderRole.VENDOR,
    "assistant": SenderRole.ASSISTANT,
    "ai": SenderRole.ASSISTANT,
}

# role → senderType the API expects
_WIRE_SENDER_TYPES = {
    SenderRole.CUSTOMER: "USER",
    SenderRole.VENDOR: "BUSINESS",
    SenderRole.ASSISTANT: "BUSINESS",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_provisional_id() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid4().hex}"


def parse_role(value) -> SenderRole:
    if isinstance(value, SenderRole):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"senderType must be a string, got {type(value).__name__}")
    role = _ROLE_ALIASES.get(value.strip().lower())
    if role is None:
        raise ValidationError(f"Unknown senderType: {value!r}")
    return role


def parse_timestamp(value) -> datetime:
    """Parse ISO-8601 strings (with or without 'Z') or epoch milliseconds."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Bad timestamp {value!r}: {e}") from e
    else:
        raise ValidationError(f"Missing or invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Attachment:
    url: str
    media_type: str
    byte_size: int
    placeholder: bool = False  # upload failed, url is a local-only reference

    @classmethod
    def from_wire(cls, data: dict) -> Attachment:
        if not isinstance(data, dict):
            raise ValidationError("image must be an object")
        url = data.get("url")
        if not url or not isinstance(url, str):
            raise ValidationError("image.url is required")
        try:
            size = int(data.get("size", data.get("byteSize", 0)) or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"image.size is not a number: {data.get('size')!r}") from e
        return cls(
            url=url,
            media_type=str(data.get("type") or data.get("mediaType") or ""),
            byte_size=size,
        )

    def to_wire(self) -> dict:
        return {"url": self.url, "type": self.media_type, "size": self.byte_size}


@dataclass(frozen=True)
class Message:
    """
    One canonical chat record.

    `provisional` marks the lifecycle state of `id`: True while the id is a
    client-generated placeholder, False once the server has assigned it.
    """
    id: str
    conversation_id: str
    sender_role: SenderRole
    created_at: datetime
    body: str | None = None
    attachment: Attachment | None = None
    read: bool = False
    generated_by_assistant: bool = False
    provisional: bool = False
    client_key: str | None = None
    delivery: DeliveryState = DeliveryState.SENT

    @classmethod
    def new_provisional(
        cls,
        conversation_id: str,
        sender_role: SenderRole,
        body: str | None = None,
        attachment: Attachment | None = None,
        created_at: datetime | None = None,
        generated_by_assistant: bool = False,
    ) -> Message:
        """Build an optimistic local record awaiting server confirmation."""
        return cls(
            id=new_provisional_id(),
            conversation_id=conversation_id,
            sender_role=sender_role,
            created_at=created_at or utcnow(),
            body=body,
            attachment=attachment,
            generated_by_assistant=generated_by_assistant or sender_role == SenderRole.ASSISTANT,
            provisional=True,
            client_key=uuid4().hex,
            delivery=DeliveryState.PENDING,
        )

    @classmethod
    def from_wire(cls, data: dict, conversation_id: str | None = None) -> Message:
        """
        Parse a server record. Raises ValidationError on anything malformed.
        `conversation_id` fills in the room id for poll payloads that omit it.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Message must be an object, got {type(data).__name__}")

        msg_id = data.get("_id") or data.get("id")
        if not msg_id or not isinstance(msg_id, str):
            raise ValidationError("Message has no id")

        conv = data.get("chatRoomId") or data.get("conversationId") or conversation_id
        if not conv:
            raise ValidationError(f"Message {msg_id} has no conversation id")

        raw_role = data.get("senderRole") or data.get("senderType")
        role = parse_role(raw_role)
        is_ai = bool(data.get("isAI") or data.get("generatedByAssistant"))
        if is_ai and role == SenderRole.VENDOR:
            role = SenderRole.ASSISTANT

        body = data.get("content", data.get("body"))
        if body is not None and not isinstance(body, str):
            raise ValidationError(f"Message {msg_id} content is not text")

        image = data.get("image") or data.get("attachment")
        attachment = Attachment.from_wire(image) if image else None

        if not body and attachment is None:
            raise ValidationError(f"Message {msg_id} has neither content nor attachment")

        return cls(
            id=msg_id,
            conversation_id=str(conv),
            sender_role=role,
            created_at=parse_timestamp(data.get("createdAt") or data.get("created_at")),
            body=body or None,
            attachment=attachment,
            read=bool(data.get("read", False)),
            generated_by_assistant=is_ai or role == SenderRole.ASSISTANT,
            provisional=False,
            client_key=data.get("clientKey") or None,
            delivery=DeliveryState.SENT,
        )

    def to_wire(self) -> dict:
        out = {
            "_id": self.id,
            "chatRoomId": self.conversation_id,
            "senderType": _WIRE_SENDER_TYPES[self.sender_role],
            "content": self.body or "",
            "createdAt": format_timestamp(self.created_at),
            "read": self.read,
            "isAI": self.generated_by_assistant,
        }
        if self.attachment:
            out["image"] = self.attachment.to_wire()
        if self.client_key:
            out["clientKey"] = self.client_key
        return out

    @property
    def has_attachment(self) -> bool:
        return self.attachment is not None

    def merged_with(self, incoming: Message) -> Message:
        """
        Fold another copy of the same logical message into this one.
        Server fields win, except that `read` never goes back to False.
        """
        return replace(
            incoming,
            read=self.read or incoming.read,
            client_key=incoming.client_key or self.client_key,
        )


def wire_sender_type(role: SenderRole) -> str:
    return _WIRE_SENDER_TYPES[role]


@dataclass(frozen=True)
class ConversationMeta:
    """Conversation-list metadata as reported by the list poll."""
    id: str
    participant_ids: tuple[str, ...] = ()
    last_message_at: datetime | None = None
    last_message_preview: str = ""
    unread_count: int = 0
    vendor_online: bool = False

    @classmethod
    def from_wire(cls, data: dict) -> ConversationMeta:
        if not isinstance(data, dict):
            raise ValidationError("Conversation must be an object")
        conv_id = data.get("_id") or data.get("id") or data.get("chatRoomId")
        if not conv_id:
            raise ValidationError("Conversation has no id")

        participants = data.get("participantIds") or data.get("participants") or []
        if not participants:
            participants = [p for p in (data.get("userId"), data.get("businessId")) if p]

        last_message = data.get("lastMessage")
        preview = ""
        last_at = data.get("lastMessageAt") or data.get("updatedAt")
        if isinstance(last_message, dict):
            preview = last_message.get("content") or ""
            last_at = last_at or last_message.get("createdAt")
        elif isinstance(last_message, str):
            preview = last_message

        try:
            unread = int(data.get("unreadCount", 0) or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"unreadCount is not a number: {data.get('unreadCount')!r}") from e

        return cls(
            id=str(conv_id),
            participant_ids=tuple(str(p) for p in participants),
            last_message_at=parse_timestamp(last_at) if last_at else None,
            last_message_preview=preview,
            unread_count=max(unread, 0),
            vendor_online=bool(data.get("vendorOnline", data.get("isBusinessOnline", False))),
        )


@dataclass(frozen=True)
class Conversation:
    """Consumer-facing conversation snapshot; `unread_count` is derived."""
    id: str
    participant_ids: tuple[str, ...] = ()
    last_message_at: datetime | None = None
    last_message_preview: str = ""
    unread_count: int = 0


@dataclass
class SyncEvent:
    """Notification delivered to engine listeners."""
    kind: str                      # "messages", "meta", "typing", "connection", "error"
    conversation_id: str = ""
    payload: dict = field(default_factory=dict)

"""
Base API abstraction.
Every REST collaborator the engine talks to implements this interface so the
engine, the poller and the read-receipt tracker can treat it uniformly (and
tests can swap in a fake).
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime

from chatsync.models import Attachment, ConversationMeta, Message, SenderRole

logger = logging.getLogger(__name__)


@dataclass
class SendAck:
    """Synchronous acknowledgement of a send."""
    permanent_id: str
    created_at: datetime | None = None
    client_key: str | None = None


@dataclass
class PollResult:
    """One conversation snapshot, ascending by created_at."""
    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    meta: ConversationMeta | None = None
    rejected: int = 0  # records dropped as malformed


@dataclass
class AssistantReply:
    response_text: str
    slot_state: dict | None = None


class ChatApi(abc.ABC):
    """
    Abstract REST collaborator.
    Implementations raise the chatsync.errors taxonomy, never transport
    exceptions.
    """

    @abc.abstractmethod
    async def send(
        self,
        conversation_id: str,
        sender_role: SenderRole,
        body: str | None = None,
        attachment: Attachment | None = None,
        client_key: str | None = None,
        generated_by_assistant: bool = False,
    ) -> SendAck | None:
        """
        Post a message. Returns the ack, or None when the server has no ack
        path and confirmation will arrive as an inbound event instead.
        """
        ...

    @abc.abstractmethod
    async def fetch_messages(self, conversation_id: str) -> PollResult:
        """Poll fetch for one conversation."""
        ...

    @abc.abstractmethod
    async def fetch_conversations(self) -> list[ConversationMeta]:
        """Poll fetch for the conversation list (metadata only)."""
        ...

    @abc.abstractmethod
    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> int:
        """Idempotent mark-as-read. Returns the server's updated count."""
        ...

    @abc.abstractmethod
    async def upload_attachment(self, filename: str, content: bytes, media_type: str) -> Attachment:
        """Upload a file and describe where it landed."""
        ...

    @abc.abstractmethod
    async def assistant_reply(
        self,
        conversation_id: str,
        recent_messages: list[Message],
        business_context: dict,
        slot_state: dict | None = None,
    ) -> AssistantReply:
        """Opaque request/response call to the text generation collaborator."""
        ...

    async def aclose(self):
        """Release pooled connections, if any."""
        return None

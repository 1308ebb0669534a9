"""
HTTP API client — the marketplace REST endpoints the sync engine relies on.

    POST /api/chat/send                      send (synchronous ack)
    GET  /api/chat/rooms/{id}/messages       conversation poll
    GET  /api/chat/rooms                     conversation-list poll
    PUT  /api/chat/mark-as-read/{id}         mark-as-read
    POST /api/chat/upload-image              attachment upload
    POST /api/chat/ai-response               assistant collaborator

Status codes and httpx exceptions are translated into the chatsync error
taxonomy here, at the channel boundary. Transient failures are retried by
RetryPolicy before anything above this layer sees them.
"""

from __future__ import annotations

import logging
import time

import httpx

from chatsync.errors import AuthExpired, RoomNotFound, TransientNetworkError, ValidationError
from chatsync.models import (
    Attachment,
    ConversationMeta,
    Message,
    SenderRole,
    parse_timestamp,
    wire_sender_type,
)
from chatsync.transport.base import AssistantReply, ChatApi, PollResult, SendAck
from chatsync.transport.retry import RetryPolicy

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = (408, 425, 429, 500, 502, 503, 504)


class HttpChatApi(ChatApi):
    """REST collaborator backed by httpx."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 15.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict) -> HttpChatApi:
        api_cfg = cfg.get("api", {})
        return cls(
            base_url=api_cfg.get("base_url", "http://localhost:3000"),
            token=api_cfg.get("token", ""),
            timeout=float(api_cfg.get("timeout", 15)),
            retry=RetryPolicy.from_config(cfg),
        )

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        kwargs = {"base_url": self.base_url, "timeout": self.timeout, "headers": self._headers()}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    @staticmethod
    def _check(resp: httpx.Response, conversation_id: str = "") -> dict:
        """Map HTTP status to the error taxonomy and decode the JSON body."""
        status = resp.status_code
        if status in (401, 403):
            raise AuthExpired(f"HTTP {status}: {resp.text[:200]}")
        if status == 404:
            raise RoomNotFound(conversation_id, f"HTTP 404 for {resp.request.url.path}")
        if status in _TRANSIENT_STATUS:
            raise TransientNetworkError(f"HTTP {status}: {resp.text[:200]}", status_code=status)
        if status >= 400:
            raise ValidationError(f"HTTP {status}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ValidationError(f"Response is not JSON: {resp.text[:200]}") from e
        if data is None:
            return {}
        return data

    async def _request(self, label: str, method: str, path: str, conversation_id: str = "", **kwargs):
        async def attempt():
            t0 = time.monotonic()
            try:
                async with self._client() as client:
                    resp = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise TransientNetworkError(f"Timeout calling {path}: {e}") from e
            except httpx.TransportError as e:
                raise TransientNetworkError(f"{type(e).__name__} calling {path}: {e}") from e
            latency = (time.monotonic() - t0) * 1000
            logger.debug("%s %s → %d in %.0fms", method, path, resp.status_code, latency)
            return self._check(resp, conversation_id)

        return await self.retry.run(label, attempt)

    # ------------------------------------------------------------------
    # ChatApi
    # ------------------------------------------------------------------

    async def send(
        self,
        conversation_id: str,
        sender_role: SenderRole,
        body: str | None = None,
        attachment: Attachment | None = None,
        client_key: str | None = None,
        generated_by_assistant: bool = False,
    ) -> SendAck | None:
        payload = {
            "chatRoomId": conversation_id,
            "content": body or "",
            "senderType": wire_sender_type(sender_role),
            "isAI": generated_by_assistant or sender_role == SenderRole.ASSISTANT,
        }
        if attachment is not None and not attachment.placeholder:
            payload["image"] = attachment.to_wire()
        if client_key:
            payload["clientKey"] = client_key

        data = await self._request("send", "POST", "/api/chat/send", conversation_id, json=payload)
        message_id = data.get("messageId") or data.get("_id") or (data.get("message") or {}).get("_id")
        if not message_id:
            return None
        created = data.get("createdAt") or (data.get("message") or {}).get("createdAt")
        return SendAck(
            permanent_id=str(message_id),
            created_at=parse_timestamp(created) if created else None,
            client_key=data.get("clientKey"),
        )

    async def fetch_messages(self, conversation_id: str) -> PollResult:
        data = await self._request(
            "poll", "GET", f"/api/chat/rooms/{conversation_id}/messages", conversation_id,
        )
        raw_messages = data if isinstance(data, list) else data.get("messages", [])
        result = PollResult(conversation_id=conversation_id)

        for raw in raw_messages:
            try:
                result.messages.append(Message.from_wire(raw, conversation_id=conversation_id))
            except ValidationError as e:
                result.rejected += 1
                logger.warning("Dropping malformed record in %s: %s", conversation_id, e)

        room = data.get("room") if isinstance(data, dict) else None
        if isinstance(room, dict):
            try:
                result.meta = ConversationMeta.from_wire({"_id": conversation_id, **room})
            except ValidationError as e:
                logger.warning("Ignoring malformed room metadata for %s: %s", conversation_id, e)

        result.messages.sort(key=lambda m: m.created_at)
        return result

    async def fetch_conversations(self) -> list[ConversationMeta]:
        data = await self._request("list-poll", "GET", "/api/chat/rooms")
        rooms = data if isinstance(data, list) else data.get("rooms", data.get("chatRooms", []))
        metas = []
        for raw in rooms:
            try:
                metas.append(ConversationMeta.from_wire(raw))
            except ValidationError as e:
                logger.warning("Dropping malformed conversation: %s", e)
        return metas

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> int:
        data = await self._request(
            "mark-read", "PUT", f"/api/chat/mark-as-read/{conversation_id}", conversation_id,
            json={"messageIds": list(message_ids)},
        )
        try:
            return int(data.get("messagesUpdated", data.get("updatedCount", 0)) or 0)
        except (TypeError, ValueError):
            return 0

    async def upload_attachment(self, filename: str, content: bytes, media_type: str) -> Attachment:
        data = await self._request(
            "upload", "POST", "/api/chat/upload-image",
            files={"file": (filename, content, media_type)},
        )
        return Attachment(
            url=data.get("url", ""),
            media_type=data.get("type") or media_type,
            byte_size=int(data.get("size") or len(content)),
        )

    async def assistant_reply(
        self,
        conversation_id: str,
        recent_messages: list[Message],
        business_context: dict,
        slot_state: dict | None = None,
    ) -> AssistantReply:
        payload = {
            "chatRoomId": conversation_id,
            "messages": [m.to_wire() for m in recent_messages],
            "businessContext": business_context,
        }
        if slot_state is not None:
            payload["slotState"] = slot_state

        data = await self._request(
            "assistant", "POST", "/api/chat/ai-response", conversation_id, json=payload,
        )
        text = data.get("response") or data.get("responseText") or ""
        if not isinstance(text, str):
            raise ValidationError("Assistant response is not text")
        return AssistantReply(response_text=text, slot_state=data.get("slotState"))

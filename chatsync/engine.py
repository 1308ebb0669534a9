"""
ChatSyncEngine — the process-scoped channel manager.

Constructed once per session and handed to consumers by reference. It owns
the store and wires every component together:

    push frames ─┐
                 ├─▶ DeliveryMerge ─▶ IdentityReconciler ─▶ MessageStore
    poll results ┘                                              │
                                                                ▼
    visibility reports ─▶ ReadReceiptTracker ─▶ mark_read ──▶ listeners

Lifecycle is explicit: start() opens the push channel and the poll loops,
close() tears everything down. Opening a conversation bumps the merge
generation, joins the room, binds the poller and attaches read-receipt
tracking; closing it undoes all of that and cancels every timer and task
that belonged to it.

Consumers subscribe with add_listener() and receive SyncEvent objects:
    messages    records appended / reconciled / updated / read
    meta        conversation-list metadata changed
    typing      a peer started or stopped typing
    connection  push channel state transition
    error       AuthExpired, RoomNotFound, failed send
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from chatsync.assistant import AssistantRelay
from chatsync.errors import AuthExpired, ChatSyncError, RoomNotFound, ValidationError
from chatsync.merge import DeliveryMerge, MergeResult, Source
from chatsync.models import (
    Attachment,
    Conversation,
    DeliveryState,
    Message,
    SenderRole,
    SyncEvent,
    parse_timestamp,
)
from chatsync.polling import PollingChannel
from chatsync.receipts import ManualVisibilityObserver, ReadReceiptTracker, ViewContext, VisibilityObserver
from chatsync.reconciler import IdentityReconciler
from chatsync.store import MessageStore
from chatsync.supervisor import ConnectionState, ConnectionSupervisor
from chatsync.timers import TaskScope
from chatsync.transport.base import ChatApi
from chatsync.transport.push import PushChannel
from chatsync.typing_signals import TypingEmitter, TypingIndicator
from chatsync.wiretap import WireLog

logger = logging.getLogger(__name__)

Listener = Callable[[SyncEvent], None]


class ChatSyncEngine:
    def __init__(
        self,
        api: ChatApi,
        channel: PushChannel,
        local_role: SenderRole,
        local_id: str = "",
        cfg: dict | None = None,
        business_context: dict | None = None,
        wiretap: WireLog | None = None,
    ):
        cfg = cfg or {}
        self.api = api
        self.channel = channel
        self.local_role = local_role
        self.local_id = local_id
        self.business_context = business_context or {}
        self.wiretap = wiretap

        self.store = MessageStore(local_role)
        self.reconciler = IdentityReconciler.from_config(self.store, cfg)
        self.supervisor = ConnectionSupervisor.from_config(
            channel,
            self._dispatch_push,
            cfg,
            polling_active=lambda: self.poller.running,
            on_state=self._on_connection_state,
            on_auth_expired=self._auth_failed,
        )
        self.merge = DeliveryMerge(self.store, self.reconciler, gate=self._accepting)
        self.poller = PollingChannel.from_config(
            api,
            self.merge,
            cfg,
            on_result=self._on_poll_result,
            on_list=self._on_list,
            on_error=self._on_channel_error,
        )
        self.receipts = ReadReceiptTracker.from_config(
            self.store,
            api,
            cfg,
            on_change=self._on_local_read,
            on_error=self._on_channel_error,
        )
        typing_cfg = cfg.get("typing", {})
        self.typing_in = TypingIndicator(
            timeout=float(typing_cfg.get("timeout", 3.0)),
            on_change=self._on_typing,
        )
        self.typing_out = TypingEmitter(self._emit_typing, idle=float(typing_cfg.get("idle", 2.0)))
        self.assistant = AssistantRelay.from_config(api, cfg)

        self.auth_expired = False
        self.surface_visible = True
        self._session = TaskScope("session")
        self._conversation_scope: TaskScope | None = None
        self._observer: VisibilityObserver | None = None
        self._contexts: dict[str, dict] = {}
        self._listeners: list[Listener] = []
        self._started = False

    @classmethod
    def from_config(
        cls,
        local_role: SenderRole,
        local_id: str = "",
        cfg: dict | None = None,
        business_context: dict | None = None,
    ) -> ChatSyncEngine:
        """Build an engine with the HTTP API, WebSocket channel and wiretap from config."""
        from chatsync.config import get_config
        from chatsync.transport.http_api import HttpChatApi
        from chatsync.transport.push import WebSocketPushChannel

        cfg = cfg or get_config()
        client_type = "user" if local_role == SenderRole.CUSTOMER else "business"
        wire_cfg = cfg.get("wiretap", {})
        wiretap = WireLog(wire_cfg.get("path", "./data/wire.jsonl")) if wire_cfg.get("enabled") else None
        return cls(
            HttpChatApi.from_config(cfg),
            WebSocketPushChannel.from_config(cfg, client_type=client_type, client_id=local_id),
            local_role,
            local_id,
            cfg=cfg,
            business_context=business_context,
            wiretap=wiretap,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def active_conversation(self) -> str | None:
        return self.merge.active_conversation

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.state

    async def start(self):
        if self._started:
            return
        self._started = True
        await self.supervisor.start()
        self.poller.start()
        logger.info("Sync engine started as %s %s", self.local_role.value, self.local_id)

    async def close(self):
        """Tear down the session: conversation, timers, loops, connections."""
        await self.close_conversation()
        await self.typing_out.aclose()
        await self.typing_in.aclose()
        await self.receipts.aclose()
        await self.poller.stop()
        await self.supervisor.stop()
        await self._session.aclose()
        await self.api.aclose()
        if self.wiretap:
            self.wiretap.close()
        self._started = False
        logger.info("Sync engine closed")

    async def __aenter__(self) -> ChatSyncEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def reauthenticate(self, token: str | None = None):
        """Resume after AuthExpired, optionally with a fresh token."""
        if token is not None:
            for target in (self.api, self.channel):
                if hasattr(target, "token"):
                    target.token = token
        self.auth_expired = False
        await self.supervisor.resume()
        self.poller.start()
        self._emit("connection", "", state=self.supervisor.state.value, reauthenticated=True)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def open_conversation(
        self,
        conversation_id: str,
        observer: VisibilityObserver | None = None,
        context: ViewContext = ViewContext.DETAIL,
        business_context: dict | None = None,
    ) -> VisibilityObserver:
        """
        Make `conversation_id` the active conversation. Returns the visibility
        observer in use (a ManualVisibilityObserver unless one was passed).
        """
        if self.active_conversation is not None:
            await self.close_conversation()

        generation = self.merge.activate(conversation_id)
        self._conversation_scope = TaskScope(f"conversation-{conversation_id}")
        if business_context is not None:
            self._contexts[conversation_id] = business_context

        self._observer = observer or ManualVisibilityObserver()
        self.receipts.attach(conversation_id, self._observer, context)

        await self.supervisor.join(conversation_id)
        self.poller.open(conversation_id, generation)
        if not self.poller.running:
            # No poll loop yet; load once so the conversation is not empty
            await self.poller.poll_conversation_once(conversation_id, generation)

        logger.info("Opened conversation %s (generation %d)", conversation_id, generation)
        return self._observer

    async def close_conversation(self):
        conv = self.active_conversation
        if conv is None:
            return
        self.typing_out.stop(conv)
        self.typing_in.clear(conv)
        await self.receipts.detach()
        self.poller.close_conversation()
        await self.supervisor.leave(conv)
        self.merge.activate(None)
        self._observer = None
        scope, self._conversation_scope = self._conversation_scope, None
        if scope is not None:
            await scope.aclose()
        logger.info("Closed conversation %s", conv)

    def _resolve(self, conversation_id: str | None) -> str:
        conv = conversation_id or self.active_conversation
        if not conv:
            raise ValueError("No conversation given and none is open")
        return conv

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self,
        body: str | None = None,
        conversation_id: str | None = None,
        filename: str | None = None,
        content: bytes | None = None,
        media_type: str = "application/octet-stream",
    ) -> Message:
        """
        Send a message as the local actor. The optimistic record is in the
        store before the network call starts; the returned record is its
        state after the call (permanent, still pending, or failed).
        """
        conv = self._resolve(conversation_id)
        body = (body or "").strip() or None
        if body is None and content is None:
            raise ValidationError("Message needs text or an attachment")

        self.typing_out.stop(conv)
        attachment = None
        if content is not None:
            attachment = await self._upload(filename or "attachment", content, media_type)

        vendor_online = self._vendor_online(conv)
        stored = await self._post(conv, self.local_role, body, attachment)

        if self.local_role == SenderRole.CUSTOMER and body:
            respond = self.assistant.should_respond(conv, vendor_online)
            self.assistant.note_customer_message(conv)
            if respond and self._conversation_scope is not None and conv == self.active_conversation:
                self._conversation_scope.spawn(self._assistant_turn(conv), name=f"assistant-{conv}")
        return stored

    async def retry_send(self, message_id: str, conversation_id: str | None = None) -> Message | None:
        """Re-send a record whose delivery failed, with the same idempotency key."""
        conv = self._resolve(conversation_id)
        message = self.store.get(message_id, conv)
        if message is None or message.delivery != DeliveryState.FAILED:
            return message
        pending = self.store.update(message_id, conv, delivery=DeliveryState.PENDING)
        return await self._deliver(pending)

    async def _upload(self, filename: str, content: bytes, media_type: str) -> Attachment:
        try:
            return await self.api.upload_attachment(filename, content, media_type)
        except AuthExpired as e:
            self._auth_failed(e)
        except ChatSyncError as e:
            logger.warning("Upload of %s failed, sending a local placeholder: %s", filename, e)
        return Attachment(
            url=f"local://{filename}",
            media_type=media_type,
            byte_size=len(content),
            placeholder=True,
        )

    async def _post(
        self,
        conversation_id: str,
        role: SenderRole,
        body: str | None,
        attachment: Attachment | None = None,
    ) -> Message:
        provisional = self.reconciler.add_provisional(
            Message.new_provisional(conversation_id, role, body=body, attachment=attachment)
        )
        self._emit("messages", conversation_id, appended=[provisional.id])
        self._tap("out", "api", "send", provisional)
        return await self._deliver(provisional)

    async def _deliver(self, provisional: Message) -> Message:
        conv = provisional.conversation_id
        try:
            ack = await self.api.send(
                conv,
                provisional.sender_role,
                body=provisional.body,
                attachment=provisional.attachment,
                client_key=provisional.client_key,
                generated_by_assistant=provisional.generated_by_assistant,
            )
        except ChatSyncError as e:
            failed = self.reconciler.mark_failed(provisional.id, conv)
            logger.warning("Send of %s in %s failed: %s", provisional.id, conv, e)
            if isinstance(e, AuthExpired):
                self._auth_failed(e)
            else:
                self._emit("error", conv, error=type(e).__name__, message=str(e), message_id=provisional.id)
            if failed is not None:
                self._emit("messages", conv, updated=[failed.id])
            return failed or provisional

        if ack is None:
            # Confirmation will arrive as an inbound record
            return self.store.get(provisional.id, conv) or provisional

        result = self.merge.ingest_ack(provisional.id, conv, ack.permanent_id, ack.created_at, ack.client_key)
        self._publish(result, Source.ACK)
        return (
            self.store.get(ack.permanent_id, conv)
            or self.store.get(provisional.id, conv)
            or provisional
        )

    async def _assistant_turn(self, conversation_id: str):
        await asyncio.sleep(self.assistant.reply_delay)
        context = self._contexts.get(conversation_id, self.business_context)
        try:
            reply = await self.assistant.request(
                conversation_id, self.store.get_ordered(conversation_id), context,
            )
        except AuthExpired as e:
            self._auth_failed(e)
            return
        if reply is None:
            return
        await self._post(conversation_id, SenderRole.ASSISTANT, reply.response_text)

    def _vendor_online(self, conversation_id: str) -> bool:
        meta = self.merge.meta(conversation_id)
        return bool(meta and meta.vendor_online)

    # ------------------------------------------------------------------
    # Typing, visibility, connectivity
    # ------------------------------------------------------------------

    def input_activity(self, conversation_id: str | None = None):
        """Call on every change to the compose box."""
        self.typing_out.input_activity(self._resolve(conversation_id))

    async def _emit_typing(self, conversation_id: str, is_typing: bool) -> bool:
        event = "typing" if is_typing else "stop_typing"
        self._tap("out", "push", event, conversation_id=conversation_id)
        return await self.supervisor.emit(event, {"chatRoomId": conversation_id, "userId": self.local_id})

    def typing_peers(self, conversation_id: str | None = None) -> list[str]:
        return self.typing_in.typing_peers(self._resolve(conversation_id))

    def report_visibility(self, message_id: str, ratio: float) -> bool:
        """Feed a visibility measurement to the built-in manual observer."""
        if not isinstance(self._observer, ManualVisibilityObserver):
            return False
        return self._observer.report(message_id, ratio)

    def set_surface_visible(self, visible: bool):
        """Host surface shown/hidden. Regaining visibility resyncs at once."""
        was_visible, self.surface_visible = self.surface_visible, visible
        self.poller.set_visible(visible)
        if visible and not was_visible:
            self.supervisor.resync()

    def retry_connection(self) -> bool:
        """Manual retry from the connectivity banner."""
        self.poller.force_run()
        return self.supervisor.resync()

    async def reload_history(self, conversation_id: str | None = None) -> int:
        """
        Drop stored history and fetch it again. Pending provisional records
        are kept. Returns the number of records now stored.
        """
        conv = self._resolve(conversation_id)
        self.store.evict(conv, keep_provisional=True)
        self.merge.forget(conv)
        self._emit("messages", conv, reloaded=True)
        if conv == self.active_conversation:
            await self.poller.poll_conversation_once(conv, self.merge.generation)
        return len(self.store.get_ordered(conv))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def messages(self, conversation_id: str | None = None) -> tuple[Message, ...]:
        return self.store.get_ordered(self._resolve(conversation_id))

    def unread_count(self, conversation_id: str | None = None) -> int:
        return self.merge.unread_count(self._resolve(conversation_id))

    def conversation(self, conversation_id: str) -> Conversation:
        return self.merge.conversation(conversation_id)

    def conversations(self) -> list[Conversation]:
        return self.merge.conversations()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to SyncEvents. Returns a function that unsubscribes."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, kind: str, conversation_id: str = "", **payload):
        event = SyncEvent(kind=kind, conversation_id=conversation_id, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Listener failed on %s event: %s", kind, e, exc_info=True)

    def _tap(self, direction: str, channel: str, event: str, message: Message | None = None, **kw):
        if self.wiretap is None:
            return
        if message is not None:
            kw.setdefault("conversation_id", message.conversation_id)
            kw.setdefault("message_id", message.id)
            kw.setdefault("role", message.sender_role.value)
            kw.setdefault("content", message.body or (message.attachment.url if message.attachment else ""))
        try:
            self.wiretap.log(direction, channel, event, **kw)
        except OSError as e:
            logger.warning("Wiretap write failed: %s", e)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _accepting(self) -> bool:
        return not self.auth_expired and self.supervisor.accepting()

    def _publish(self, result: MergeResult, source: Source):
        if result.discarded or not result.changed:
            return
        for message in (*result.appended, *result.reconciled, *result.updated):
            if not message.provisional:
                self.receipts.track(message)
            if source != Source.ACK:
                self._tap("in", source.value, "message", message)
        self._emit(
            "messages",
            result.conversation_id,
            appended=[m.id for m in result.appended],
            reconciled=[m.id for m in result.reconciled],
            updated=[m.id for m in result.updated],
            source=source.value,
        )

    def _dispatch_push(self, event: str, data: dict):
        conv = str(data.get("chatRoomId") or data.get("roomId") or data.get("conversationId") or "")

        if event == "receive_message":
            payload = data.get("message") if isinstance(data.get("message"), dict) else data
            self._publish(self.merge.ingest_message(payload, Source.PUSH, conv or None), Source.PUSH)

        elif event == "message_sent":
            permanent_id = data.get("messageId") or data.get("_id")
            if not permanent_id or not conv:
                logger.warning("Ignoring malformed message_sent frame: %r", data)
                return
            try:
                created_at = parse_timestamp(data["createdAt"]) if data.get("createdAt") else None
            except ValidationError as e:
                logger.warning("Bad createdAt on message_sent: %s", e)
                created_at = None
            self._tap("in", "push", event, conversation_id=conv, message_id=str(permanent_id))
            result = self.merge.ingest_ack(
                data.get("tempId") or None, conv, str(permanent_id), created_at, data.get("clientKey"),
            )
            self._publish(result, Source.ACK)

        elif event in ("user_typing", "user_stop_typing"):
            peer = str(data.get("userId") or "")
            if not conv or (peer and peer == self.local_id):
                return
            self.typing_in.on_signal(conv, peer or "peer", event == "user_typing")

        elif event == "messages_read":
            ids = data.get("messageIds") or []
            changed = self.merge.ingest_read(conv, [str(i) for i in ids])
            if changed:
                self._tap("in", "push", event, conversation_id=conv, content=", ".join(changed))
                self._emit("messages", conv, read=changed, source=Source.PUSH.value)

        elif event == "message_error":
            logger.warning("Server rejected a message: %s", data.get("error"))
            self._emit("error", conv, error="message_error", message=str(data.get("error", "")))

        else:
            logger.debug("Ignoring push event '%s'", event)

    def _on_poll_result(self, result: MergeResult):
        self._publish(result, Source.POLL)

    def _on_list(self, changed: list[str]):
        self._emit("meta", "", conversations=changed)

    def _on_local_read(self, conversation_id: str, ids: list[str]):
        self._tap("out", "api", "mark_read", conversation_id=conversation_id, content=", ".join(ids))
        self._emit("messages", conversation_id, read=ids, source="local")

    def _on_typing(self, conversation_id: str, peer_id: str, is_typing: bool):
        self._emit("typing", conversation_id, peer=peer_id, typing=is_typing)

    def _on_connection_state(self, previous: ConnectionState, state: ConnectionState):
        if state == ConnectionState.CONNECTED and previous != ConnectionState.CONNECTED:
            # Catch up on whatever the push channel missed while down
            self.poller.force_run()
        self._emit("connection", "", state=state.value, previous=previous.value)

    def _on_channel_error(self, error: ChatSyncError, conversation_id: str):
        if isinstance(error, AuthExpired):
            self._auth_failed(error)
            return
        if isinstance(error, RoomNotFound):
            self._session.spawn(self.supervisor.leave(conversation_id), name=f"leave-{conversation_id}")
        self._emit("error", conversation_id, error=type(error).__name__, message=str(error))

    def _auth_failed(self, error: AuthExpired):
        if self.auth_expired:
            return
        self.auth_expired = True
        logger.error("Authentication expired, synchronization halted: %s", error)
        self._session.spawn(self.poller.stop(), name="halt-poller")
        if not self.supervisor.halted:
            self.supervisor.halt(error)
            self._session.spawn(self.supervisor.stop(), name="halt-push")
        self._emit("error", "", error="AuthExpired", message=str(error))

    def status(self) -> dict:
        """Snapshot for diagnostics and the CLI."""
        return {
            "connection": self.supervisor.state.value,
            "attempts": self.supervisor.attempts,
            "last_error": self.supervisor.last_error,
            "auth_expired": self.auth_expired,
            "active_conversation": self.active_conversation,
            "rooms": sorted(self.supervisor.rooms),
            "polls": self.poller.polls,
            "surface_visible": self.surface_visible,
        }

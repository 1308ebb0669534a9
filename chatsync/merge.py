"""
DeliveryChannel Merge — one stream out of two inbound paths.

The push channel and the polling channel both deliver permanent records. The
merge is a grow-only union keyed by permanent id: a record seen on either
channel stays, no matter what a later snapshot from the other channel omits.
Every operation here is idempotent and order-independent, so an old poll
response that lands after a newer push event cannot roll anything back.

Two guards sit in front of the union:
  - generation: each conversation switch bumps a counter; poll results
    captured under an older generation (or for a conversation that is no
    longer open) are discarded.
  - gate: the connection supervisor can halt inbound processing entirely
    (expired credentials).

The conversation-list poll only refreshes ConversationMeta. It never writes
message lists, so the open conversation's live list is always preserved.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from chatsync.errors import ValidationError
from chatsync.models import Conversation, ConversationMeta, Message
from chatsync.reconciler import IdentityReconciler, Outcome
from chatsync.store import MessageStore

logger = logging.getLogger(__name__)


class Source(str, enum.Enum):
    PUSH = "push"
    POLL = "poll"
    LIST_POLL = "list_poll"
    ACK = "ack"


@dataclass
class MergeResult:
    """What one ingest call did to the store."""
    conversation_id: str = ""
    appended: list[Message] = field(default_factory=list)
    reconciled: list[Message] = field(default_factory=list)
    updated: list[Message] = field(default_factory=list)
    duplicates: int = 0
    rejected: int = 0
    discarded: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.appended or self.reconciled or self.updated)

    def record(self, outcome: Outcome, message: Message):
        if outcome == Outcome.APPENDED:
            self.appended.append(message)
        elif outcome == Outcome.RECONCILED:
            self.reconciled.append(message)
        elif outcome == Outcome.UPDATED:
            self.updated.append(message)
        else:
            self.duplicates += 1


class DeliveryMerge:
    """Applies inbound records from any channel through the reconciler."""

    def __init__(
        self,
        store: MessageStore,
        reconciler: IdentityReconciler,
        gate: Callable[[], bool] | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self._gate = gate
        self._active: str | None = None
        self._generation = 0
        self._meta: dict[str, ConversationMeta] = {}
        self._loaded: set[str] = set()     # conversations with at least one full snapshot
        self._stopped: set[str] = set()    # RoomNotFound, no more merging

    # ------------------------------------------------------------------
    # Active conversation / generations
    # ------------------------------------------------------------------

    @property
    def active_conversation(self) -> str | None:
        return self._active

    @property
    def generation(self) -> int:
        return self._generation

    def activate(self, conversation_id: str | None) -> int:
        """Switch the open conversation. Returns the new generation."""
        self._generation += 1
        self._active = conversation_id
        if conversation_id is not None:
            self.store.ensure_conversation(conversation_id)
            self._stopped.discard(conversation_id)
        logger.debug("Active conversation → %s (generation %d)", conversation_id, self._generation)
        return self._generation

    def is_current(self, conversation_id: str, generation: int) -> bool:
        return conversation_id == self._active and generation == self._generation

    def stop_room(self, conversation_id: str):
        """Stop merging a conversation the server no longer knows about."""
        self._stopped.add(conversation_id)

    def is_stopped(self, conversation_id: str) -> bool:
        return conversation_id in self._stopped

    def forget(self, conversation_id: str):
        """History reload: the next snapshot is treated as a fresh load."""
        self._loaded.discard(conversation_id)

    def _accepting(self, conversation_id: str = "") -> bool:
        if self._gate is not None and not self._gate():
            return False
        return not (conversation_id and conversation_id in self._stopped)

    # ------------------------------------------------------------------
    # Inbound records
    # ------------------------------------------------------------------

    def _coerce(self, raw, conversation_id: str | None) -> Message:
        if isinstance(raw, Message):
            return raw
        return Message.from_wire(raw, conversation_id=conversation_id)

    def ingest_message(self, raw, source: Source = Source.PUSH, conversation_id: str | None = None) -> MergeResult:
        """Merge a single record (push delivery or assistant injection)."""
        result = MergeResult(conversation_id=conversation_id or "")
        try:
            message = self._coerce(raw, conversation_id)
        except ValidationError as e:
            logger.warning("Dropping malformed %s record: %s", source.value, e)
            result.rejected = 1
            return result

        result.conversation_id = message.conversation_id
        if not self._accepting(message.conversation_id):
            result.discarded = True
            return result

        outcome, stored = self.reconciler.apply(message)
        result.record(outcome, stored)
        logger.debug("%s %s %s in %s", source.value, outcome.value, stored.id, stored.conversation_id)
        return result

    def ingest_snapshot(
        self,
        conversation_id: str,
        records: Iterable,
        meta: ConversationMeta | None = None,
        generation: int | None = None,
        source: Source = Source.POLL,
    ) -> MergeResult:
        """
        Union a poll snapshot into the store.

        Records absent from the snapshot are left alone. If `generation` is
        given and no longer current, the whole snapshot is discarded.
        """
        result = MergeResult(conversation_id=conversation_id)
        if generation is not None and not self.is_current(conversation_id, generation):
            logger.debug("Discarding stale %s snapshot for %s (generation %s, now %s/%d)",
                         source.value, conversation_id, generation, self._active, self._generation)
            result.discarded = True
            return result
        if not self._accepting(conversation_id):
            result.discarded = True
            return result

        self.store.ensure_conversation(conversation_id)
        for raw in records:
            try:
                message = self._coerce(raw, conversation_id)
            except ValidationError as e:
                logger.warning("Dropping malformed %s record in %s: %s", source.value, conversation_id, e)
                result.rejected += 1
                continue
            if message.conversation_id != conversation_id:
                logger.warning("Dropping record %s for %s from %s snapshot",
                               message.id, message.conversation_id, conversation_id)
                result.rejected += 1
                continue
            outcome, stored = self.reconciler.apply(message)
            result.record(outcome, stored)

        self._loaded.add(conversation_id)
        if meta is not None:
            self._meta[conversation_id] = meta
        if result.changed:
            logger.debug("%s snapshot for %s: +%d appended, %d reconciled, %d updated",
                         source.value, conversation_id, len(result.appended),
                         len(result.reconciled), len(result.updated))
        return result

    def ingest_ack(
        self,
        provisional_id: str | None,
        conversation_id: str,
        permanent_id: str,
        created_at: datetime | None = None,
        client_key: str | None = None,
    ) -> MergeResult:
        """Apply a send confirmation (synchronous ack or message_sent push event)."""
        result = MergeResult(conversation_id=conversation_id)
        if not self._accepting(conversation_id):
            result.discarded = True
            return result

        if provisional_id is None and client_key:
            provisional_id = self.reconciler.provisional_for_key(client_key)
        if provisional_id is None:
            if self.store.get(permanent_id, conversation_id) is not None:
                result.duplicates += 1
                return result
            provisional_id = self.reconciler.guess_pending(conversation_id)
        if provisional_id is None:
            logger.debug("Ack for %s matches no provisional record", permanent_id)
            return result

        before = self.store.get(provisional_id, conversation_id)
        stored = self.reconciler.confirm(provisional_id, conversation_id, permanent_id, created_at)
        if before is not None and stored is not None:
            result.reconciled.append(stored)
        else:
            result.duplicates += 1
        return result

    def ingest_read(self, conversation_id: str, message_ids: Iterable[str]) -> list[str]:
        """The counterpart read some of our records; flip their read flag."""
        if not self._accepting(conversation_id):
            return []
        return self.store.mark_read(conversation_id, message_ids)

    # ------------------------------------------------------------------
    # Conversation list
    # ------------------------------------------------------------------

    def ingest_conversation_list(self, metas: Iterable[ConversationMeta]) -> list[str]:
        """Refresh metadata only. Returns ids whose metadata changed."""
        if not self._accepting():
            return []
        changed = []
        for meta in metas:
            if self._meta.get(meta.id) != meta:
                self._meta[meta.id] = meta
                changed.append(meta.id)
        return changed

    def meta(self, conversation_id: str) -> ConversationMeta | None:
        return self._meta.get(conversation_id)

    def unread_count(self, conversation_id: str) -> int:
        """Derived from records once loaded; the server's figure before that."""
        if conversation_id in self._loaded:
            return self.store.unread_count(conversation_id)
        meta = self._meta.get(conversation_id)
        return meta.unread_count if meta else self.store.unread_count(conversation_id)

    def conversation(self, conversation_id: str) -> Conversation:
        meta = self._meta.get(conversation_id) or ConversationMeta(id=conversation_id)
        last_at = meta.last_message_at
        preview = meta.last_message_preview

        latest = self.store.latest(conversation_id)
        if latest is not None and (last_at is None or latest.created_at >= last_at):
            last_at = latest.created_at
            preview = latest.body or ("[attachment]" if latest.attachment else preview)

        return Conversation(
            id=conversation_id,
            participant_ids=meta.participant_ids,
            last_message_at=last_at,
            last_message_preview=preview,
            unread_count=self.unread_count(conversation_id),
        )

    def conversations(self) -> list[Conversation]:
        """All known conversations, most recent activity first."""
        ids = list(dict.fromkeys([*self._meta, *self.store.conversation_ids()]))
        convs = [self.conversation(cid) for cid in ids]
        return sorted(
            convs,
            key=lambda c: c.last_message_at.timestamp() if c.last_message_at else float("-inf"),
            reverse=True,
        )

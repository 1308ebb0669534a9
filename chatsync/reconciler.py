"""
IdentityReconciler — one record per logical message.

Two mechanisms, kept apart on purpose:

  1. Exact mapping. A send acknowledgement (provisional id → permanent id) or
     a server that echoes the client's idempotency key identifies the
     provisional record precisely. This is the primary path.

  2. ProvisionalIndex. A client-local, best-effort matcher for inbound
     records that arrive before (or without) an acknowledgement. It compares
     sender role, attachment presence, body and timestamp proximity. It can be
     switched off (heuristic=False) once every server echoes client keys.

Permanent ids form a grow-only set in the store: once a permanent record is
stored, redelivery from any channel is a no-op apart from the read flag.
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime

from chatsync.models import DeliveryState, Message
from chatsync.store import MessageStore

logger = logging.getLogger(__name__)

# How many provisional→permanent mappings to remember for late deliveries
_MAPPING_CAPACITY = 500


class Outcome(str, enum.Enum):
    APPENDED = "appended"        # new logical message
    RECONCILED = "reconciled"    # provisional record rewritten to permanent
    UPDATED = "updated"          # known permanent record, fields changed
    DUPLICATE = "duplicate"      # known permanent record, nothing changed


class ProvisionalIndex:
    """
    Heuristic provisional matching.

    Candidates share the incoming record's conversation, sender role and
    attachment presence, and were created within `window_seconds` of it.
    Among those, exact body equality wins (oldest first); otherwise the
    oldest candidate. FIFO keeps two concurrent sends from cross-matching.
    An old record with the same text never takes over a fresh send.
    """

    def __init__(self, store: MessageStore, window_seconds: float = 5.0):
        self.store = store
        self.window_seconds = window_seconds

    def _within_window(self, a: datetime, b: datetime) -> bool:
        return abs((a - b).total_seconds()) <= self.window_seconds

    def match(self, incoming: Message) -> Message | None:
        candidates = [
            m for m in self.store.provisional(incoming.conversation_id)
            if m.sender_role == incoming.sender_role
            and m.has_attachment == incoming.has_attachment
            and self._within_window(m.created_at, incoming.created_at)
        ]
        if not candidates:
            return None

        if incoming.body:
            for candidate in candidates:
                if candidate.body == incoming.body:
                    return candidate
        return candidates[0]

    def oldest_pending(self, conversation_id: str) -> str | None:
        for candidate in self.store.provisional(conversation_id):
            if candidate.delivery == DeliveryState.PENDING:
                return candidate.id
        return None


class IdentityReconciler:
    """Maps provisional records to permanent ones and applies inbound records."""

    def __init__(self, store: MessageStore, window_seconds: float = 5.0, heuristic: bool = True):
        self.store = store
        self.index = ProvisionalIndex(store, window_seconds) if heuristic else None
        # permanent id → provisional id, from send acknowledgements
        self._confirmed: OrderedDict[str, str] = OrderedDict()
        # client idempotency key → provisional id
        self._by_client_key: dict[str, str] = {}

    @classmethod
    def from_config(cls, store: MessageStore, cfg: dict) -> IdentityReconciler:
        rc = cfg.get("reconcile", {})
        return cls(
            store,
            window_seconds=float(rc.get("match_window", 5.0)),
            heuristic=bool(rc.get("heuristic", True)),
        )

    # -- local writes --------------------------------------------------------

    def add_provisional(self, message: Message) -> Message:
        """Register an optimistic record and put it in the store."""
        if not message.provisional:
            raise ValueError(f"{message.id} is not a provisional record")
        if message.client_key:
            self._by_client_key[message.client_key] = message.id
        return self.store.upsert(message)

    def confirm(
        self,
        provisional_id: str,
        conversation_id: str,
        permanent_id: str,
        created_at: datetime | None = None,
    ) -> Message | None:
        """
        Exact path: the server acknowledged `provisional_id` as `permanent_id`.
        Safe in either order relative to the inbound copy of the same message.
        """
        self._remember(permanent_id, provisional_id)

        provisional = self.store.get(provisional_id, conversation_id)
        existing = self.store.get(permanent_id, conversation_id)

        if provisional is None:
            # Already reconciled through the inbound path
            return existing

        self._forget_key(provisional)

        if existing is not None:
            # Inbound copy was appended before the ack; drop the placeholder
            logger.debug("Ack for %s after %s was stored, removing provisional", provisional_id, permanent_id)
            self.store.remove_provisional(lambda m: m.id == provisional_id)
            return self.store.upsert(replace(existing, read=existing.read or provisional.read))

        confirmed = replace(
            provisional,
            id=permanent_id,
            provisional=False,
            delivery=DeliveryState.SENT,
            created_at=created_at or provisional.created_at,
        )
        return self.store.replace(provisional_id, confirmed)

    def mark_failed(self, provisional_id: str, conversation_id: str) -> Message | None:
        """Flag an optimistic record whose send never got through. It is not removed."""
        current = self.store.get(provisional_id, conversation_id)
        if current is None or not current.provisional:
            return current
        return self.store.update(provisional_id, conversation_id, delivery=DeliveryState.FAILED)

    # -- inbound -------------------------------------------------------------

    def apply(self, incoming: Message) -> tuple[Outcome, Message]:
        """Fold one permanent record from any channel into the store."""
        if incoming.provisional:
            raise ValueError("Inbound records must carry a permanent id")

        conv = incoming.conversation_id

        provisional_id = self._exact_match(incoming)
        if provisional_id is not None:
            return Outcome.RECONCILED, self._reconcile(provisional_id, incoming)

        existing = self.store.get(incoming.id, conv)
        if existing is not None:
            stored = self.store.upsert(incoming)
            return (Outcome.DUPLICATE if stored == existing else Outcome.UPDATED), stored

        if self.index is not None:
            candidate = self.index.match(incoming)
            if candidate is not None:
                logger.debug("Heuristic match %s → %s", candidate.id, incoming.id)
                return Outcome.RECONCILED, self._reconcile(candidate.id, incoming)

        return Outcome.APPENDED, self.store.upsert(incoming)

    def _exact_match(self, incoming: Message) -> str | None:
        conv = incoming.conversation_id
        provisional_id = self._confirmed.get(incoming.id)
        if provisional_id and self.store.get(provisional_id, conv) is not None:
            return provisional_id
        if incoming.client_key:
            provisional_id = self._by_client_key.get(incoming.client_key)
            if provisional_id and self.store.get(provisional_id, conv) is not None:
                return provisional_id
        return None

    def _reconcile(self, provisional_id: str, incoming: Message) -> Message:
        provisional = self.store.get(provisional_id, incoming.conversation_id)
        if provisional is not None:
            self._forget_key(provisional)
        self._remember(incoming.id, provisional_id)
        return self.store.replace(provisional_id, incoming)

    # -- bookkeeping ---------------------------------------------------------

    def _remember(self, permanent_id: str, provisional_id: str):
        self._confirmed[permanent_id] = provisional_id
        self._confirmed.move_to_end(permanent_id)
        while len(self._confirmed) > _MAPPING_CAPACITY:
            self._confirmed.popitem(last=False)

    def _forget_key(self, provisional: Message):
        if provisional.client_key:
            self._by_client_key.pop(provisional.client_key, None)

    def provisional_for_key(self, client_key: str) -> str | None:
        return self._by_client_key.get(client_key)

    def guess_pending(self, conversation_id: str) -> str | None:
        """
        Oldest still-pending provisional record in a conversation, for acks
        that name neither the provisional id nor a client key. Heuristic, so
        None when the heuristic path is disabled.
        """
        if self.index is None:
            return None
        return self.index.oldest_pending(conversation_id)

    def permanent_for(self, provisional_id: str) -> str | None:
        for permanent_id, prov in self._confirmed.items():
            if prov == provisional_id:
                return permanent_id
        return None

"""
MessageStore — the single source of truth for message lists.

One timeline per conversation, kept sorted by (created_at, insertion seq) on
every mutation. Callers get tuples of frozen records, never the internal
lists. The store knows nothing about channels or reconciliation; it only
enforces ordering, id uniqueness and the read flag's one-way transition.
"""

from __future__ import annotations

import bisect
import itertools
import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from chatsync.models import Message, SenderRole

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    seq: int
    message: Message

    def sort_key(self):
        return (self.message.created_at, self.seq)


class _Timeline:
    """Sorted records for one conversation plus an id index."""

    def __init__(self):
        self.entries: list[_Entry] = []
        self.by_id: dict[str, _Entry] = {}

    def insert(self, entry: _Entry):
        bisect.insort(self.entries, entry, key=_Entry.sort_key)
        self.by_id[entry.message.id] = entry

    def remove(self, message_id: str) -> _Entry | None:
        entry = self.by_id.pop(message_id, None)
        if entry is not None:
            self.entries.remove(entry)
        return entry

    def rewrite(self, entry: _Entry, message: Message):
        """Swap the record held by `entry`, re-slotting only if its timestamp moved."""
        old = entry.message
        if old.id != message.id:
            del self.by_id[old.id]
            self.by_id[message.id] = entry
        if old.created_at == message.created_at:
            entry.message = message
            return
        self.entries.remove(entry)
        entry.message = message
        bisect.insort(self.entries, entry, key=_Entry.sort_key)


class MessageStore:
    """
    Per-conversation ordered collection of canonical records.

    `local_role` is the role of the person using this client; unread counts
    are computed against it.
    """

    def __init__(self, local_role: SenderRole):
        self.local_role = local_role
        self._timelines: dict[str, _Timeline] = {}
        self._seq = itertools.count()

    # -- reads ---------------------------------------------------------------

    def get_ordered(self, conversation_id: str) -> tuple[Message, ...]:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            return ()
        return tuple(e.message for e in timeline.entries)

    def get(self, message_id: str, conversation_id: str | None = None) -> Message | None:
        if conversation_id is not None:
            timeline = self._timelines.get(conversation_id)
            entry = timeline.by_id.get(message_id) if timeline else None
            return entry.message if entry else None
        for timeline in self._timelines.values():
            entry = timeline.by_id.get(message_id)
            if entry:
                return entry.message
        return None

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._timelines

    def conversation_ids(self) -> list[str]:
        return list(self._timelines)

    def provisional(self, conversation_id: str) -> list[Message]:
        """Provisional records in insertion order (oldest send first)."""
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            return []
        entries = sorted(
            (e for e in timeline.entries if e.message.provisional),
            key=lambda e: e.seq,
        )
        return [e.message for e in entries]

    def is_counterpart(self, message: Message) -> bool:
        return message.sender_role != self.local_role

    def unread_ids(self, conversation_id: str) -> list[str]:
        return [
            m.id for m in self.get_ordered(conversation_id)
            if self.is_counterpart(m) and not m.read
        ]

    def unread_count(self, conversation_id: str) -> int:
        return len(self.unread_ids(conversation_id))

    def latest(self, conversation_id: str) -> Message | None:
        timeline = self._timelines.get(conversation_id)
        if not timeline or not timeline.entries:
            return None
        return timeline.entries[-1].message

    # -- writes --------------------------------------------------------------

    def ensure_conversation(self, conversation_id: str):
        self._timelines.setdefault(conversation_id, _Timeline())

    def upsert(self, message: Message) -> Message:
        """
        Insert a record, or merge it into the existing record with the same id.
        Returns the stored record.
        """
        timeline = self._timelines.setdefault(message.conversation_id, _Timeline())
        entry = timeline.by_id.get(message.id)
        if entry is None:
            timeline.insert(_Entry(next(self._seq), message))
            return message

        merged = entry.message.merged_with(message)
        if merged != entry.message:
            timeline.rewrite(entry, merged)
        return merged

    def replace(self, old_id: str, message: Message) -> Message:
        """
        Rewrite record `old_id` as `message`, keeping its insertion slot.
        If `message.id` is already stored, the two collapse into one record.
        """
        timeline = self._timelines.setdefault(message.conversation_id, _Timeline())
        entry = timeline.by_id.get(old_id)
        if entry is None:
            return self.upsert(message)

        existing = timeline.by_id.get(message.id) if message.id != old_id else None
        if existing is not None:
            timeline.remove(old_id)
            merged = existing.message.merged_with(message)
            timeline.rewrite(existing, merged)
            logger.debug("Collapsed %s into existing %s", old_id, message.id)
            return merged

        merged = entry.message.merged_with(message)
        timeline.rewrite(entry, merged)
        return merged

    def update(self, message_id: str, conversation_id: str, **changes) -> Message | None:
        """Apply field changes to one record. `read` can only be raised."""
        timeline = self._timelines.get(conversation_id)
        entry = timeline.by_id.get(message_id) if timeline else None
        if entry is None:
            return None
        if "read" in changes:
            changes["read"] = entry.message.read or bool(changes["read"])
        updated = replace(entry.message, **changes)
        if updated != entry.message:
            timeline.rewrite(entry, updated)
        return updated

    def mark_read(self, conversation_id: str, message_ids: Iterable[str]) -> list[str]:
        """Set read=True on the given records. Returns ids that actually changed."""
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            return []
        changed = []
        for message_id in message_ids:
            entry = timeline.by_id.get(message_id)
            if entry is None or entry.message.read:
                continue
            entry.message = replace(entry.message, read=True)
            changed.append(message_id)
        return changed

    def remove_provisional(self, predicate: Callable[[Message], bool]) -> list[Message]:
        """Drop provisional records matching `predicate`. Permanent records are never touched."""
        removed = []
        for timeline in self._timelines.values():
            doomed = [e.message for e in timeline.entries
                      if e.message.provisional and predicate(e.message)]
            for message in doomed:
                timeline.remove(message.id)
                removed.append(message)
        return removed

    def evict(self, conversation_id: str, keep_provisional: bool = True) -> int:
        """
        Drop a conversation's history (reload or memory pressure).
        Pending provisional records survive by default so unsent text is not lost.
        """
        timeline = self._timelines.pop(conversation_id, None)
        if timeline is None:
            return 0
        kept = [e for e in timeline.entries if keep_provisional and e.message.provisional]
        if kept:
            fresh = _Timeline()
            for entry in kept:
                fresh.insert(entry)
            self._timelines[conversation_id] = fresh
        evicted = len(timeline.entries) - len(kept)
        logger.debug("Evicted %d records from %s", evicted, conversation_id)
        return evicted

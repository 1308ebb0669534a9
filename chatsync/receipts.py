"""
Read receipts driven by on-screen visibility.

Visibility is a capability, not a rendering detail: a VisibilityObserver
reports "element for message X is now ≥ threshold visible" and nothing else.
A UI layer implements it with whatever primitive it has; headless hosts and
tests use ManualVisibilityObserver and call report() themselves.

Flow for one seen message:
  1. observer callback fires (ratio ≥ threshold)
  2. if it is an unread counterpart record: read=True in the store right
     away (unread count drops immediately)
  3. id joins the pending batch; a trailing debounce (500ms) flushes the
     batch as one idempotent mark_read call
  4. on failure the local state stays read and the ids are watched again;
     the next visibility event (for them or any other record) flushes them
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
from typing import Callable

from chatsync.errors import AuthExpired, ChatSyncError, RoomNotFound
from chatsync.models import Message
from chatsync.store import MessageStore
from chatsync.timers import TaskScope
from chatsync.transport.base import ChatApi

logger = logging.getLogger(__name__)


class ViewContext(str, enum.Enum):
    LIST = "list"      # compact list / widget, 50% visible
    DETAIL = "detail"  # full conversation view, 60% visible


DEFAULT_THRESHOLDS = {ViewContext.LIST: 0.5, ViewContext.DETAIL: 0.6}


class VisibilityObserver(abc.ABC):
    """Reports when a message's element crosses a visibility threshold."""

    @abc.abstractmethod
    def observe(self, message_id: str, threshold: float, callback: Callable[[str], None]):
        ...

    @abc.abstractmethod
    def unobserve(self, message_id: str):
        ...

    @abc.abstractmethod
    def disconnect(self):
        """Stop observing everything."""
        ...


class ManualVisibilityObserver(VisibilityObserver):
    """Observer fed by explicit report() calls (headless hosts, tests, bridges)."""

    def __init__(self):
        self._watched: dict[str, tuple[float, Callable[[str], None]]] = {}

    def observe(self, message_id: str, threshold: float, callback: Callable[[str], None]):
        self._watched[message_id] = (threshold, callback)

    def unobserve(self, message_id: str):
        self._watched.pop(message_id, None)

    def disconnect(self):
        self._watched.clear()

    @property
    def watched(self) -> list[str]:
        return list(self._watched)

    def report(self, message_id: str, ratio: float) -> bool:
        """Host says `message_id` is `ratio` visible. True if the threshold was met."""
        entry = self._watched.get(message_id)
        if entry is None:
            return False
        threshold, callback = entry
        if ratio < threshold:
            return False
        callback(message_id)
        return True


class ReadReceiptTracker:
    """Batches seen-unread ids into debounced mark-as-read calls for one conversation."""

    def __init__(
        self,
        store: MessageStore,
        api: ChatApi,
        debounce: float = 0.5,
        thresholds: dict[ViewContext, float] | None = None,
        on_change: Callable[[str, list[str]], None] | None = None,
        on_error: Callable[[ChatSyncError, str], None] | None = None,
    ):
        self.store = store
        self.api = api
        self.debounce = debounce
        self.thresholds = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self._on_change = on_change
        self._on_error = on_error

        self.conversation_id: str | None = None
        self._observer: VisibilityObserver | None = None
        self._threshold = self.thresholds[ViewContext.DETAIL]
        self._pending: list[str] = []
        self._retry: list[str] = []
        self._timer: asyncio.TimerHandle | None = None
        self._scope = TaskScope("read-receipts")
        self.calls = 0

    @classmethod
    def from_config(cls, store: MessageStore, api: ChatApi, cfg: dict, **kwargs) -> ReadReceiptTracker:
        rr = cfg.get("read_receipts", {})
        return cls(
            store,
            api,
            debounce=float(rr.get("debounce", 0.5)),
            thresholds={
                ViewContext.LIST: float(rr.get("list_threshold", 0.5)),
                ViewContext.DETAIL: float(rr.get("detail_threshold", 0.6)),
            },
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Attachment to a conversation
    # ------------------------------------------------------------------

    def attach(self, conversation_id: str, observer: VisibilityObserver,
               context: ViewContext = ViewContext.DETAIL):
        """Start watching the unread counterpart records of a conversation."""
        if self.conversation_id is not None:
            raise RuntimeError(f"Tracker still attached to {self.conversation_id}; detach first")
        self.conversation_id = conversation_id
        self._observer = observer
        self._threshold = self.thresholds[context]
        for message in self.store.get_ordered(conversation_id):
            self.track(message)
        logger.debug("Read receipts attached to %s (threshold %.0f%%)",
                     conversation_id, self._threshold * 100)

    def track(self, message: Message):
        """Observe one record if it still needs a receipt."""
        if self._observer is None or message.conversation_id != self.conversation_id:
            return
        if not self.store.is_counterpart(message):
            return
        if message.read and message.id not in self._retry:
            return
        self._observer.observe(message.id, self._threshold, self._seen)

    def untrack(self, message_id: str):
        if self._observer is not None:
            self._observer.unobserve(message_id)

    async def detach(self):
        """Stop observing, cancel the debounce timer, flush what was already seen."""
        if self._observer is not None:
            self._observer.disconnect()
        self._observer = None
        self._scope.cancel_timer(self._timer)
        self._timer = None
        if self._pending or self._retry:
            await self.flush()
        if self._retry:
            logger.info("Dropping %d unsent read receipt(s) for %s", len(self._retry), self.conversation_id)
            self._retry.clear()
        self.conversation_id = None

    async def aclose(self):
        await self.detach()
        await self._scope.aclose()

    # ------------------------------------------------------------------
    # Seen → optimistic read → debounced flush
    # ------------------------------------------------------------------

    def _seen(self, message_id: str):
        conv = self.conversation_id
        if conv is None:
            return
        message = self.store.get(message_id, conv)
        if message is None or not self.store.is_counterpart(message):
            return
        self.untrack(message_id)

        changed = self.store.mark_read(conv, [message_id])
        if changed:
            self._pending.append(message_id)
            if self._on_change:
                self._on_change(conv, changed)
        elif message_id not in self._retry:
            return
        self._schedule_flush()

    def _schedule_flush(self):
        self._scope.cancel_timer(self._timer)
        self._timer = self._scope.call_later(self.debounce, self._fire)

    def _fire(self):
        self._timer = None
        self._scope.spawn(self.flush(), name="mark-read")

    @property
    def pending(self) -> list[str]:
        """Ids awaiting a receipt, in timeline order."""
        ids = list(dict.fromkeys([*self._pending, *self._retry]))
        if self.conversation_id is None:
            return ids
        position = {m.id: i for i, m in enumerate(self.store.get_ordered(self.conversation_id))}
        return sorted(ids, key=lambda i: position.get(i, len(position)))

    async def flush(self) -> int:
        """Send one mark_read for everything pending. Returns the server's count."""
        conv = self.conversation_id
        ids = self.pending
        self._pending.clear()
        self._retry.clear()
        if conv is None or not ids:
            return 0

        self.calls += 1
        try:
            updated = await self.api.mark_read(conv, ids)
            logger.debug("Marked %d message(s) read in %s (server updated %d)", len(ids), conv, updated)
            for message_id in ids:
                self.untrack(message_id)
            return updated
        except RoomNotFound as e:
            logger.warning("Mark-as-read for missing conversation %s dropped", conv)
            self._report(e, conv)
        except AuthExpired as e:
            self._requeue(ids)
            self._report(e, conv)
        except ChatSyncError as e:
            # Local state stays read; retried with the next visibility-driven flush
            self._requeue(ids)
            logger.warning("Mark-as-read for %s failed, %d id(s) queued: %s", conv, len(ids), e)
        return 0

    def _requeue(self, ids: list[str]):
        """Keep failed ids and watch them again so their next sighting retries."""
        self._retry.extend(ids)
        if self._observer is None:
            return
        for message_id in ids:
            self._observer.observe(message_id, self._threshold, self._seen)

    def _report(self, error: ChatSyncError, conversation_id: str):
        if self._on_error:
            self._on_error(error, conversation_id)

"""
Polling channel — the client-initiated half of delivery.

Two loops:
  - conversation poll, every `conversation_interval` (3s) for the open conversation
  - list poll, every `list_interval` (10s) for conversation metadata

Both pause while the host surface is hidden and run immediately when it
becomes visible again. The conversation loop is bound to one (conversation,
generation) pair; switching conversations cancels it and starts a fresh one,
and anything the old loop fetched is rejected by the merge's generation check.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from chatsync.errors import AuthExpired, ChatSyncError, RoomNotFound, TransientNetworkError, ValidationError
from chatsync.merge import DeliveryMerge, MergeResult, Source
from chatsync.transport.base import ChatApi

logger = logging.getLogger(__name__)


class PollingChannel:
    """Fixed-interval fetches feeding the merge."""

    def __init__(
        self,
        api: ChatApi,
        merge: DeliveryMerge,
        conversation_interval: float = 3.0,
        list_interval: float = 10.0,
        on_result: Callable[[MergeResult], None] | None = None,
        on_list: Callable[[list[str]], None] | None = None,
        on_error: Callable[[ChatSyncError, str], None] | None = None,
    ):
        self.api = api
        self.merge = merge
        self.conversation_interval = conversation_interval
        self.list_interval = list_interval
        self._on_result = on_result
        self._on_list = on_list
        self._on_error = on_error

        self._visible = True
        self._running = False
        self._conversation: str | None = None
        self._generation = 0
        self._conv_task: asyncio.Task | None = None
        self._list_task: asyncio.Task | None = None
        self._conv_wake = asyncio.Event()
        self._list_wake = asyncio.Event()
        self.polls = 0  # completed conversation polls, for diagnostics

    @classmethod
    def from_config(cls, api: ChatApi, merge: DeliveryMerge, cfg: dict, **kwargs) -> PollingChannel:
        poll_cfg = cfg.get("polling", {})
        return cls(
            api,
            merge,
            conversation_interval=float(poll_cfg.get("conversation_interval", 3.0)),
            list_interval=float(poll_cfg.get("list_interval", 10.0)),
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def conversation(self) -> str | None:
        return self._conversation

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._running:
            return
        self._running = True
        loop = asyncio.get_running_loop()
        self._list_task = loop.create_task(self._list_loop(), name="list-poll")
        if self._conversation is not None:
            self._restart_conversation_loop()

    async def stop(self):
        self._running = False
        tasks = [t for t in (self._conv_task, self._list_task) if t is not None]
        self._conv_task = self._list_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def open(self, conversation_id: str, generation: int):
        """Bind the conversation loop to a newly opened conversation."""
        self._conversation = conversation_id
        self._generation = generation
        if self._running:
            self._restart_conversation_loop()

    def close_conversation(self):
        self._conversation = None
        if self._conv_task is not None:
            self._conv_task.cancel()
            self._conv_task = None

    def set_visible(self, visible: bool):
        """Pause while hidden; on regain, poll immediately."""
        was_visible, self._visible = self._visible, visible
        if visible and not was_visible:
            logger.debug("Surface visible again, forcing poll")
            self.force_run()

    def force_run(self):
        self._conv_wake.set()
        self._list_wake.set()

    def _restart_conversation_loop(self):
        if self._conv_task is not None:
            self._conv_task.cancel()
        self._conv_wake.clear()
        self._conv_task = asyncio.get_running_loop().create_task(
            self._conversation_loop(self._conversation, self._generation),
            name=f"poll-{self._conversation}",
        )

    # ------------------------------------------------------------------
    # Single fetches
    # ------------------------------------------------------------------

    async def poll_conversation_once(self, conversation_id: str, generation: int) -> MergeResult | None:
        """
        Fetch and merge one snapshot. Returns None on failure; raises nothing
        except CancelledError.
        """
        try:
            result = await self.api.fetch_messages(conversation_id)
        except TransientNetworkError as e:
            logger.warning("Poll for %s failed, next tick will retry: %s", conversation_id, e)
            return None
        except ValidationError as e:
            logger.warning("Poll for %s returned garbage: %s", conversation_id, e)
            return None
        except RoomNotFound as e:
            logger.error("Conversation %s not found, stopping poll", conversation_id)
            self.merge.stop_room(conversation_id)
            self._report(e, conversation_id)
            return None
        except AuthExpired as e:
            logger.error("Poll for %s rejected credentials", conversation_id)
            self._report(e, conversation_id)
            return None

        merged = self.merge.ingest_snapshot(
            conversation_id,
            result.messages,
            meta=result.meta,
            generation=generation,
            source=Source.POLL,
        )
        merged.rejected += result.rejected
        self.polls += 1
        if not merged.discarded and self._on_result:
            self._on_result(merged)
        return merged

    async def poll_list_once(self) -> list[str]:
        try:
            metas = await self.api.fetch_conversations()
        except (TransientNetworkError, ValidationError) as e:
            logger.warning("Conversation list poll failed: %s", e)
            return []
        except AuthExpired as e:
            self._report(e, "")
            return []
        except RoomNotFound as e:
            logger.warning("Conversation list endpoint missing: %s", e)
            return []

        changed = self.merge.ingest_conversation_list(metas)
        if changed and self._on_list:
            self._on_list(changed)
        return changed

    def _report(self, error: ChatSyncError, conversation_id: str):
        if self._on_error:
            self._on_error(error, conversation_id)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _sleep(self, wake: asyncio.Event, interval: float):
        """Wait one interval (or forever while hidden) unless woken."""
        timeout = interval if self._visible else None
        try:
            await asyncio.wait_for(wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        wake.clear()

    async def _conversation_loop(self, conversation_id: str, generation: int):
        while self._running and self._conversation == conversation_id:
            if self.merge.is_stopped(conversation_id):
                return
            if self._visible:
                await self.poll_conversation_once(conversation_id, generation)
            await self._sleep(self._conv_wake, self.conversation_interval)

    async def _list_loop(self):
        while self._running:
            if self._visible:
                await self.poll_list_once()
            await self._sleep(self._list_wake, self.list_interval)

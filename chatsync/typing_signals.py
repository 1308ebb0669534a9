"""
Presence/typing signals. Ephemeral, never stored.

Inbound: TypingIndicator keeps one flag per (conversation, peer). Each typing
event (re)arms a clear timer; no refresh within `timeout` and the flag drops
on its own.

Outbound: TypingEmitter coalesces input activity into start/stop transitions.
The first keystroke emits `typing`, later ones only push the scheduled
`stop_typing` further out. Sending a message or leaving the conversation stops
immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chatsync.timers import TaskScope

logger = logging.getLogger(__name__)


class TypingIndicator:
    """Per-peer typing flags with automatic expiry."""

    def __init__(self, timeout: float = 3.0, on_change: Callable[[str, str, bool], None] | None = None):
        self.timeout = timeout
        self._on_change = on_change
        self._scope = TaskScope("typing-in")
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}

    def on_signal(self, conversation_id: str, peer_id: str, is_typing: bool):
        key = (conversation_id, peer_id)
        was_typing = key in self._timers
        self._scope.cancel_timer(self._timers.pop(key, None))

        if is_typing:
            handle = self._scope.call_later(self.timeout, self._expire, key)
            if handle is not None:
                self._timers[key] = handle
        if was_typing != (key in self._timers):
            self._notify(conversation_id, peer_id, key in self._timers)

    def _expire(self, key: tuple[str, str]):
        if self._timers.pop(key, None) is not None:
            logger.debug("Typing flag for %s in %s expired", key[1], key[0])
            self._notify(key[0], key[1], False)

    def _notify(self, conversation_id: str, peer_id: str, is_typing: bool):
        if self._on_change:
            self._on_change(conversation_id, peer_id, is_typing)

    def is_typing(self, conversation_id: str, peer_id: str | None = None) -> bool:
        if peer_id is not None:
            return (conversation_id, peer_id) in self._timers
        return any(conv == conversation_id for conv, _ in self._timers)

    def typing_peers(self, conversation_id: str) -> list[str]:
        return sorted(peer for conv, peer in self._timers if conv == conversation_id)

    def clear(self, conversation_id: str | None = None):
        """Drop flags silently (conversation switch or teardown)."""
        for key in list(self._timers):
            if conversation_id is None or key[0] == conversation_id:
                self._scope.cancel_timer(self._timers.pop(key))

    async def aclose(self):
        self.clear()
        await self._scope.aclose()


class TypingEmitter:
    """Turns a stream of input-activity calls into start/stop emissions."""

    def __init__(self, emit: Callable[[str, bool], Awaitable[bool]], idle: float = 2.0):
        self._emit = emit
        self.idle = idle
        self._scope = TaskScope("typing-out")
        self._active: dict[str, asyncio.TimerHandle | None] = {}
        self.emitted: int = 0

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def input_activity(self, conversation_id: str):
        """Call on every input change. Only the first one in a burst hits the wire."""
        if conversation_id not in self._active:
            self._send(conversation_id, True)
        self._scope.cancel_timer(self._active.get(conversation_id))
        self._active[conversation_id] = self._scope.call_later(self.idle, self._idle_stop, conversation_id)

    def _idle_stop(self, conversation_id: str):
        self._active[conversation_id] = None
        self.stop(conversation_id)

    def stop(self, conversation_id: str):
        """Emit stop now if a start was sent."""
        if conversation_id not in self._active:
            return
        self._scope.cancel_timer(self._active.pop(conversation_id))
        self._send(conversation_id, False)

    def stop_all(self):
        for conversation_id in list(self._active):
            self.stop(conversation_id)

    def _send(self, conversation_id: str, is_typing: bool):
        self.emitted += 1
        self._scope.spawn(self._emit(conversation_id, is_typing),
                          name=f"typing-{'start' if is_typing else 'stop'}")

    async def aclose(self):
        self.stop_all()
        await self._scope.drain(timeout=1.0)
        await self._scope.aclose()

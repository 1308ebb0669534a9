"""
ConnectionSupervisor — keeps the push channel alive.

    Disconnected → Connecting → Connected
          ↑______________________|   (any error or close)

Degraded is the poll-only mode, entered from any non-connected state while
the polling channel is running: the system keeps making progress, just with
poll latency instead of push latency.

Reconnects are bounded: `max_attempts` tries spaced reconnect_delay,
2×, 4×… capped at reconnect_delay_max. After that the supervisor parks in
Degraded until resync() is called (surface visible again, or the user hit
"retry" on the connectivity banner). On every successful connect all open
rooms are re-joined.

AuthExpired halts the supervisor for good; the caller has to re-authenticate
and call resume().
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable

from chatsync.errors import AuthExpired, TransientNetworkError
from chatsync.transport.push import PushChannel

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


class ConnectionSupervisor:
    """Owns the push channel's lifecycle and the set of subscribed rooms."""

    def __init__(
        self,
        channel: PushChannel,
        dispatch: Callable[[str, dict], None],
        max_attempts: int = 5,
        reconnect_delay: float = 0.5,
        reconnect_delay_max: float = 2.0,
        polling_active: Callable[[], bool] | None = None,
        on_state: Callable[[ConnectionState, ConnectionState], None] | None = None,
        on_auth_expired: Callable[[AuthExpired], None] | None = None,
    ):
        self.channel = channel
        self.dispatch = dispatch
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self._polling_active = polling_active or (lambda: False)
        self._on_state = on_state
        self._on_auth_expired = on_auth_expired

        self.state = ConnectionState.DISCONNECTED
        self.rooms: set[str] = set()
        self.attempts = 0
        self.halted = False
        self.last_error: str = ""
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()

    @classmethod
    def from_config(cls, channel: PushChannel, dispatch: Callable[[str, dict], None], cfg: dict, **kwargs):
        push_cfg = cfg.get("push", {})
        return cls(
            channel,
            dispatch,
            max_attempts=int(push_cfg.get("max_reconnect_attempts", 5)),
            reconnect_delay=float(push_cfg.get("reconnect_delay", 0.5)),
            reconnect_delay_max=float(push_cfg.get("reconnect_delay_max", 2.0)),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def accepting(self) -> bool:
        """Gate consulted by the merge before applying inbound data."""
        return not self.halted

    async def start(self):
        if self.running:
            return
        self.halted = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="push-supervisor")

    async def stop(self):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.channel.close()
        self._set_state(ConnectionState.DISCONNECTED)

    def resync(self) -> bool:
        """Skip any pending backoff and reconnect now. False if halted."""
        if self.halted:
            return False
        self.attempts = 0
        self._wake.set()
        return True

    async def resume(self):
        """Restart after the caller re-authenticated."""
        self.halted = False
        self.attempts = 0
        self.last_error = ""
        await self.start()

    def backoff_seconds(self, attempt: int) -> float:
        delay = self.reconnect_delay * (2 ** max(attempt - 1, 0))
        return min(delay, self.reconnect_delay_max)

    # ------------------------------------------------------------------
    # Rooms and outbound frames
    # ------------------------------------------------------------------

    async def join(self, conversation_id: str):
        self.rooms.add(conversation_id)
        if not self.connected:
            return  # joined on (re)connect
        try:
            await self.channel.join(conversation_id)
            logger.debug("Joined room %s", conversation_id)
        except TransientNetworkError as e:
            logger.warning("Join %s failed, will retry on reconnect: %s", conversation_id, e)

    async def leave(self, conversation_id: str):
        self.rooms.discard(conversation_id)
        if not self.connected:
            return
        try:
            await self.channel.leave(conversation_id)
            logger.debug("Left room %s", conversation_id)
        except TransientNetworkError as e:
            logger.debug("Leave %s failed: %s", conversation_id, e)

    async def emit(self, event: str, data: dict) -> bool:
        """Best-effort outbound frame. Returns False when not delivered."""
        if not self.connected:
            return False
        try:
            await self.channel.emit(event, data)
            return True
        except TransientNetworkError as e:
            logger.debug("Emit %s dropped: %s", event, e)
            return False

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState):
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.info("Push channel %s → %s", previous.value, state.value)
        if self._on_state:
            try:
                self._on_state(previous, state)
            except Exception as e:
                logger.error("Connection state listener failed: %s", e)

    async def _rejoin(self):
        for room in sorted(self.rooms):
            await self.channel.join(room)
        if self.rooms:
            logger.info("Re-joined %d room(s)", len(self.rooms))

    def _deliver(self, event: str, data: dict):
        try:
            self.dispatch(event, data)
        except Exception as e:
            logger.error("Push dispatch for '%s' failed: %s", event, e, exc_info=True)

    async def _run(self):
        while not self.halted:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.channel.connect()
                self.attempts = 0
                self.last_error = ""
                self._wake.clear()
                self._set_state(ConnectionState.CONNECTED)
                await self._rejoin()
                async for event, data in self.channel.events():
                    self._deliver(event, data)
            except AuthExpired as e:
                await self.channel.close()
                self._halt(e)
                break
            except TransientNetworkError as e:
                self.last_error = str(e)
                logger.warning("Push channel lost: %s", e)

            await self.channel.close()
            self._set_state(ConnectionState.DISCONNECTED)
            await self._wait_before_retry()

    async def _wait_before_retry(self):
        self.attempts += 1
        if self._polling_active():
            self._set_state(ConnectionState.DEGRADED)

        if self.attempts > self.max_attempts:
            logger.warning(
                "Push channel gave up after %d attempts, poll-only until resync",
                self.max_attempts,
            )
            self._set_state(ConnectionState.DEGRADED)
            await self._wake.wait()
        else:
            delay = self.backoff_seconds(self.attempts)
            logger.debug("Reconnect attempt %d/%d in %.1fs", self.attempts, self.max_attempts, delay)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self._wake.clear()

    def halt(self, error: AuthExpired):
        """
        Refuse inbound data and reconnects until resume(). The caller stops
        the run loop with stop() when the error was seen on another path.
        """
        self.halted = True
        self.last_error = str(error)
        logger.error("Push channel halted, re-authentication required: %s", error)

    def _halt(self, error: AuthExpired):
        self.halt(error)
        self._set_state(ConnectionState.DISCONNECTED)
        if self._on_auth_expired:
            try:
                self._on_auth_expired(error)
            except Exception as e:
                logger.error("Auth-expired listener failed: %s", e)

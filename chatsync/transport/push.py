"""
Push channel — persistent, server-initiated event delivery.

Frames are JSON objects {"event": <name>, "data": {...}} in both directions.

Inbound events:
    receive_message    a new or updated message record
    message_sent       ack {messageId, chatRoomId, tempId?, clientKey?}
    user_typing        {chatRoomId, userId}
    user_stop_typing   {chatRoomId, userId}
    messages_read      {chatRoomId, messageIds[]}
    auth_error         credentials rejected

Outbound events:
    authenticate, client_ready, join_room, leave_room, typing, stop_typing

The channel only moves frames. Reconnects, room bookkeeping and state live in
ConnectionSupervisor.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from typing import AsyncIterator

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from chatsync.errors import AuthExpired, TransientNetworkError

logger = logging.getLogger(__name__)


class PushChannel(abc.ABC):
    """Abstract push transport."""

    @abc.abstractmethod
    async def connect(self):
        """Open the connection. Raises TransientNetworkError or AuthExpired."""
        ...

    @abc.abstractmethod
    async def close(self):
        ...

    @abc.abstractmethod
    async def emit(self, event: str, data: dict):
        """Send one frame. Raises TransientNetworkError if the link is down."""
        ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[tuple[str, dict]]:
        """
        Yield (event, data) pairs until the connection ends.
        Ends by raising TransientNetworkError (drop) or AuthExpired.
        """
        ...

    async def join(self, conversation_id: str, client_type: str = "", client_id: str = ""):
        await self.emit("join_room", {
            "roomId": conversation_id, "clientType": client_type, "clientId": client_id,
        })

    async def leave(self, conversation_id: str, client_type: str = "", client_id: str = ""):
        await self.emit("leave_room", {
            "roomId": conversation_id, "clientType": client_type, "clientId": client_id,
        })


class WebSocketPushChannel(PushChannel):
    """PushChannel over a plain WebSocket using the websockets library."""

    def __init__(
        self,
        url: str,
        token: str = "",
        client_type: str = "user",
        client_id: str = "",
        connect_timeout: float = 10.0,
        ping_interval: float = 25.0,
    ):
        self.url = url
        self.token = token
        self.client_type = client_type
        self.client_id = client_id
        self.connect_timeout = connect_timeout
        self.ping_interval = ping_interval
        self._ws = None

    @classmethod
    def from_config(cls, cfg: dict, client_type: str, client_id: str) -> WebSocketPushChannel:
        push_cfg = cfg.get("push", {})
        return cls(
            url=push_cfg.get("url", "ws://localhost:5000/ws"),
            token=push_cfg.get("token") or cfg.get("api", {}).get("token", ""),
            client_type=client_type,
            client_id=client_id,
            connect_timeout=float(push_cfg.get("connect_timeout", 10)),
            ping_interval=float(push_cfg.get("ping_interval", 25)),
        )

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self):
        await self.close()
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(
                    self.url,
                    ping_interval=self.ping_interval,
                    ping_timeout=self.ping_interval,
                    close_timeout=5,
                ),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Timeout connecting to {self.url}") from e
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthExpired(f"Push handshake rejected with HTTP {status}") from e
            raise TransientNetworkError(f"Push handshake failed with HTTP {status}") from e
        except (OSError, WebSocketException) as e:
            raise TransientNetworkError(f"Failed to connect to {self.url}: {e}") from e

        await self.emit("authenticate", {
            "token": self.token, "type": self.client_type, "id": self.client_id,
        })
        await self.emit("client_ready", {"type": self.client_type, "id": self.client_id})
        logger.info("Push channel connected to %s as %s %s", self.url, self.client_type, self.client_id)

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug("Ignoring error while closing push channel: %s", e)

    async def emit(self, event: str, data: dict):
        if self._ws is None:
            raise TransientNetworkError(f"Push channel not connected (emit {event})")
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except (ConnectionClosed, OSError) as e:
            self._ws = None
            raise TransientNetworkError(f"Push channel dropped during {event}: {e}") from e

    async def join(self, conversation_id: str, client_type: str = "", client_id: str = ""):
        await super().join(conversation_id, client_type or self.client_type, client_id or self.client_id)

    async def leave(self, conversation_id: str, client_type: str = "", client_id: str = ""):
        await super().leave(conversation_id, client_type or self.client_type, client_id or self.client_id)

    async def events(self) -> AsyncIterator[tuple[str, dict]]:
        if self._ws is None:
            raise TransientNetworkError("Push channel not connected")
        ws = self._ws
        try:
            async for raw in ws:
                frame = decode_frame(raw)
                if frame is None:
                    continue
                event, data = frame
                if event == "auth_error":
                    raise AuthExpired(data.get("message") or "Push channel rejected credentials")
                yield event, data
        except ConnectionClosed as e:
            raise TransientNetworkError(f"Push channel closed: {e}") from e
        except OSError as e:
            raise TransientNetworkError(f"Push channel error: {e}") from e
        finally:
            if self._ws is ws:
                self._ws = None
        # Server ended the stream cleanly; still a disconnect from our side
        raise TransientNetworkError("Push channel ended")


def decode_frame(raw) -> tuple[str, dict] | None:
    """Parse one frame. Malformed frames are logged and skipped."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Dropping non-JSON push frame: %r", str(raw)[:200])
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        logger.warning("Dropping push frame without event name: %r", str(raw)[:200])
        return None
    data = frame.get("data")
    return frame["event"], data if isinstance(data, dict) else {}

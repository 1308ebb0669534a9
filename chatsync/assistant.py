"""
Assistant relay.

The text generation service is an external collaborator. The relay only
decides when to ask, what to send and what to keep between turns:

  - ask when the assistant is enabled, the customer just sent text, and the
    vendor is offline or has let more than `response_delay` seconds pass
    since the customer's previous message
  - the request carries the last `history` records, the business context and
    the slot state returned by the previous reply
  - slot state is opaque; it is stored per conversation and handed back
    verbatim on the next call

The engine waits `reply_delay` seconds before calling request() and inserts
the reply through its normal send path, so assistant records reconcile like
any other write.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from chatsync.errors import AuthExpired, ChatSyncError
from chatsync.models import Message
from chatsync.transport.base import AssistantReply, ChatApi

logger = logging.getLogger(__name__)


class AssistantRelay:
    def __init__(
        self,
        api: ChatApi,
        enabled: bool = True,
        response_delay: float = 10.0,
        reply_delay: float = 1.5,
        history: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.enabled = enabled
        self.response_delay = response_delay
        self.reply_delay = reply_delay
        self.history = history
        self._clock = clock
        self._last_customer_at: dict[str, float] = {}
        self._slot_state: dict[str, dict] = {}

    @classmethod
    def from_config(cls, api: ChatApi, cfg: dict, **kwargs) -> AssistantRelay:
        a = cfg.get("assistant", {})
        return cls(
            api,
            enabled=bool(a.get("enabled", True)),
            response_delay=float(a.get("response_delay", 10.0)),
            reply_delay=float(a.get("reply_delay", 1.5)),
            history=int(a.get("history", 10)),
            **kwargs,
        )

    def should_respond(self, conversation_id: str, vendor_online: bool) -> bool:
        """Decide for the customer message about to be noted. Call before note_customer_message()."""
        if not self.enabled:
            return False
        if not vendor_online:
            return True
        last = self._last_customer_at.get(conversation_id)
        return last is None or (self._clock() - last) > self.response_delay

    def note_customer_message(self, conversation_id: str):
        self._last_customer_at[conversation_id] = self._clock()

    def slot_state(self, conversation_id: str) -> dict | None:
        return self._slot_state.get(conversation_id)

    def forget(self, conversation_id: str):
        self._last_customer_at.pop(conversation_id, None)
        self._slot_state.pop(conversation_id, None)

    async def request(
        self,
        conversation_id: str,
        recent_messages: Sequence[Message],
        business_context: dict | None = None,
    ) -> AssistantReply | None:
        """
        Ask the collaborator for a reply. Returns None when there is nothing
        to insert (empty text or a non-auth failure, which is logged).
        AuthExpired propagates.
        """
        window = [m for m in recent_messages if not m.provisional or m.body][-self.history:]
        try:
            reply = await self.api.assistant_reply(
                conversation_id,
                window,
                business_context or {},
                self._slot_state.get(conversation_id),
            )
        except AuthExpired:
            raise
        except ChatSyncError as e:
            logger.warning("Assistant request for %s failed: %s", conversation_id, e)
            return None

        if reply.slot_state is not None:
            self._slot_state[conversation_id] = reply.slot_state
        if not reply.response_text.strip():
            logger.info("Assistant returned an empty reply for %s", conversation_id)
            return None
        logger.debug("Assistant reply for %s (%d chars)", conversation_id, len(reply.response_text))
        return reply

"""
Retry policy with exponential backoff.

Wraps any coroutine call to add retry handling for transient errors:
- TransientNetworkError: timeouts, connection errors, 408/429/5xx

Non-retried errors (permanent):
- AuthExpired: 401/403
- RoomNotFound: 404
- ValidationError: 400/422 or an unparseable body
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from chatsync.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Exponential backoff for a single operation.

    The channel layer owns retries; callers above it see either a result or
    the final error.
    """

    def __init__(
        self,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @classmethod
    def from_config(cls, cfg: dict) -> RetryPolicy:
        api_cfg = cfg.get("api", {})
        return cls(
            max_retries=int(api_cfg.get("max_retries", 2)),
            backoff_base=float(api_cfg.get("backoff_base", 1.5)),
            backoff_max=float(api_cfg.get("backoff_max", 10.0)),
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def run(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run `call`, retrying transient failures. Other errors propagate at once."""
        for attempt in range(self.max_retries + 1):
            try:
                return await call()
            except TransientNetworkError as e:
                if attempt >= self.max_retries:
                    logger.error("%s exhausted retries (last: %s)", label, e)
                    raise

                backoff = self.backoff_seconds(attempt + 1)
                logger.warning(
                    "%s transient failure, retry in %.1fs (%d/%d): %s",
                    label, backoff, attempt + 1, self.max_retries, e,
                )
                await asyncio.sleep(backoff)

        # Should not reach here
        raise TransientNetworkError(f"{label}: no attempts made")

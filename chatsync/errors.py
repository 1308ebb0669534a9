"""
Error taxonomy for the sync engine.

Channel-level failures are caught at the channel boundary and turned into
supervisor transitions or SyncEvents. They never escape into the caller's
presentation layer as raw transport exceptions.

    TransientNetworkError  retry with backoff at the channel layer
    AuthExpired            halt synchronization, caller must re-authenticate
    RoomNotFound           stop polling/subscribing that conversation
    ValidationError        malformed inbound record, drop and log
"""

from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for every error raised by chatsync."""


class TransientNetworkError(ChatSyncError):
    """Timeouts, connection drops, 408/429/5xx. Safe to retry."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(ChatSyncError):
    """Credentials were rejected. Nothing is retried until the caller re-authenticates."""


class RoomNotFound(ChatSyncError):
    """The conversation does not exist or is no longer accessible."""

    def __init__(self, conversation_id: str, message: str = ""):
        super().__init__(message or f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ValidationError(ChatSyncError):
    """An inbound record or response body could not be parsed."""

"""
chatsync — realtime chat synchronization.
One consistent message list per conversation out of a push channel and a poll.
"""
from chatsync.engine import ChatSyncEngine
from chatsync.errors import AuthExpired, ChatSyncError, RoomNotFound, TransientNetworkError, ValidationError
from chatsync.models import Attachment, Conversation, DeliveryState, Message, SenderRole, SyncEvent
from chatsync.receipts import ManualVisibilityObserver, ViewContext, VisibilityObserver

__all__ = [
    "ChatSyncEngine",
    "AuthExpired",
    "ChatSyncError",
    "RoomNotFound",
    "TransientNetworkError",
    "ValidationError",
    "Attachment",
    "Conversation",
    "DeliveryState",
    "Message",
    "SenderRole",
    "SyncEvent",
    "ManualVisibilityObserver",
    "ViewContext",
    "VisibilityObserver",
]

"""
Transport layer: the REST collaborator and the push channel.
Everything above this package sees the chatsync.errors taxonomy only.
"""
from chatsync.transport.base import AssistantReply, ChatApi, PollResult, SendAck
from chatsync.transport.http_api import HttpChatApi
from chatsync.transport.push import PushChannel, WebSocketPushChannel
from chatsync.transport.retry import RetryPolicy

__all__ = [
    "AssistantReply",
    "ChatApi",
    "HttpChatApi",
    "PollResult",
    "PushChannel",
    "RetryPolicy",
    "SendAck",
    "WebSocketPushChannel",
]

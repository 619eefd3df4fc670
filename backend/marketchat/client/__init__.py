"""Async messaging client.

Services:
    - MessagingAPI: REST calls (httpx).
    - SocketConnection: the live push channel (websockets), with reconnect.
    - ReconciliationEngine: merges push, poll and send results per conversation.
    - UnreadTracker: per-session unread counts and focus.
    - MessagingClient: ties the above together for one signed-in surface.
"""
from .api import MessagingAPI
from .connection import SocketConnection
from .reconciliation import ConversationView, ReconciliationEngine
from .session import MessagingClient
from .unread import UnreadTracker

__all__ = [
    "ConversationView",
    "MessagingAPI",
    "MessagingClient",
    "ReconciliationEngine",
    "SocketConnection",
    "UnreadTracker",
]

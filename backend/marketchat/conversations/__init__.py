"""Conversations and messages: persistence and REST endpoints."""
from .schemas import Conversation, ConversationSummary, Message
from .store import ConversationStore, get_store

__all__ = ["Conversation", "ConversationStore", "ConversationSummary", "Message", "get_store"]

"""Live push channel: room membership and fan-out over WebSockets."""
from .manager import MessageRouter, message_router

__all__ = ["MessageRouter", "message_router"]

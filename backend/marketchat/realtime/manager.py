"""Room-based fan-out of persisted messages to live sockets.

This module keeps track of open WebSocket connections and which
conversation room each one is subscribed to, and broadcasts stored
messages to a room.

Key features:
    - One room per connection; joining another room leaves the previous one
    - Origin suppression (the sending connection can be excluded)
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup
    - Publish deduplication with one process-wide LRU cache keyed by
      (room, message ID), so the REST write and the advisory socket
      trigger for the same message fan out once
    - Persistence gate: socket-triggered publishes re-read the message
      from the conversation store

Thread Safety:
    Room and connection maps are guarded by a ``threading.Lock``. The lock
    is only held around map updates, never across an ``await``, so it is
    safe for one event loop and for the per-connection loops the test
    client runs.

Delivery:
    At-least-once and unordered on the push channel alone. A subscriber
    that misses a push sees the message on its next REST fetch.
"""
import asyncio
import logging
import threading
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional, Set, Tuple

from fastapi import WebSocket

from marketchat.conversations.schemas import Message
from marketchat.conversations.store import ConversationStore
from marketchat.errors import Forbidden, NotFound

logger = logging.getLogger(__name__)

# Maximum number of (room, message ID) pairs remembered across all rooms
MESSAGE_DEDUP_CACHE_SIZE = 10000

# Close code for sockets dropped after a failed send
CLOSE_INTERNAL_ERROR = 1011


class Connection:
    """A live socket and the authenticated user behind it."""

    __slots__ = ("connection_id", "user_id", "websocket", "room_id")

    def __init__(self, connection_id: str, user_id: str, websocket: WebSocket) -> None:
        self.connection_id = connection_id
        self.user_id = user_id
        self.websocket = websocket
        self.room_id: Optional[str] = None


class MessageRouter:
    """Maps conversation rooms to live connections and broadcasts to them.

    Note:
        A module-level instance (``message_router``) is shared by the socket
        endpoint and the REST write path.
    """

    def __init__(self, dedup_cache_size: int = MESSAGE_DEDUP_CACHE_SIZE) -> None:
        self.dedup_cache_size = dedup_cache_size

        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}

        # conversation_id -> set of connection_ids
        self.rooms: Dict[str, Set[str]] = {}

        # (conversation_id, message_id) -> True, oldest first (LRU cache)
        self.published_ids: "OrderedDict[Tuple[str, str], bool]" = OrderedDict()

        self._lock = threading.Lock()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        """Accept a socket for an authenticated user and return its connection ID."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        with self._lock:
            self.connections[connection_id] = Connection(connection_id, user_id, websocket)
        logger.info(f"[Router] Connection {connection_id} opened for user {user_id}")
        return connection_id

    def disconnect(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and remove it from its room.

        Returns:
            The removed Connection, or None if it was already gone.
        """
        with self._lock:
            connection = self.connections.pop(connection_id, None)
            if connection is not None:
                self._leave_locked(connection)
        if connection is not None:
            logger.info(f"[Router] Connection {connection_id} closed")
        return connection

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    # =========================================================================
    # Rooms
    # =========================================================================

    def join_room(self, connection_id: str, conversation_id: str) -> Optional[str]:
        """Subscribe a connection to a conversation room.

        A connection is in at most one room; the previous one is left.

        Returns:
            The room that was left, if any.

        Raises:
            NotFound: Unknown connection.
        """
        with self._lock:
            connection = self.connections.get(connection_id)
            if connection is None:
                raise NotFound(f"Connection {connection_id} not found")
            previous = connection.room_id
            if previous == conversation_id:
                return None
            self._leave_locked(connection)
            self.rooms.setdefault(conversation_id, set()).add(connection_id)
            connection.room_id = conversation_id
        logger.info(
            f"[Router] Connection {connection_id} joined room {conversation_id}"
            + (f" (left {previous})" if previous else "")
        )
        return previous

    def leave_room(self, connection_id: str) -> Optional[str]:
        """Unsubscribe a connection from its room. Returns the room left."""
        with self._lock:
            connection = self.connections.get(connection_id)
            if connection is None:
                return None
            return self._leave_locked(connection)

    def _leave_locked(self, connection: Connection) -> Optional[str]:
        room_id = connection.room_id
        if room_id is None:
            return None
        members = self.rooms.get(room_id)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                del self.rooms[room_id]
        connection.room_id = None
        return room_id

    def get_room_size(self, conversation_id: str) -> int:
        """Get the number of connections subscribed to a room."""
        return len(self.rooms.get(conversation_id, ()))

    def room_members(self, conversation_id: str) -> List[str]:
        with self._lock:
            return sorted(self.rooms.get(conversation_id, ()))

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        conversation_id: str,
        message: Message,
        exclude: Optional[str] = None,
    ) -> int:
        """Broadcast a persisted message to a room, concurrently.

        Each message ID is broadcast at most once per room; later calls for
        the same ID are no-ops.

        Args:
            conversation_id: Room to broadcast to.
            message: The stored message.
            exclude: Connection ID to leave out (origin suppression).

        Returns:
            Number of connections the message was delivered to.
        """
        with self._lock:
            if self._already_published_locked(conversation_id, message.id):
                logger.debug(f"[Router] Duplicate publish ignored: {message.id}")
                return 0
            targets = [
                self.connections[cid]
                for cid in self.rooms.get(conversation_id, ())
                if cid != exclude and cid in self.connections
            ]

        if not targets:
            return 0

        payload = {"type": "receive_message", "message": message.model_dump()}
        results = await asyncio.gather(
            *[self._safe_send(conn, payload) for conn in targets],
            return_exceptions=True
        )

        failed = [conn for conn, ok in zip(targets, results) if ok is not True]
        for conn in failed:
            self.disconnect(conn.connection_id)
            await self._safe_close(conn)
            logger.debug(f"Removed dead connection from room {conversation_id}")

        delivered = len(targets) - len(failed)
        logger.info(
            f"[Router] Published {message.id} to {delivered}/{len(targets)} "
            f"connections in room {conversation_id}"
        )
        return delivered

    async def publish_stored(
        self,
        store: ConversationStore,
        conversation_id: str,
        message_id: str,
        sender_id: str,
        exclude: Optional[str] = None,
    ) -> int:
        """Publish a message only after reading it back from the store.

        This is the socket path: the client's payload is never broadcast,
        only the persisted record.

        Raises:
            NotFound: The message was never persisted.
            Forbidden: It belongs to another conversation or sender.
        """
        stored = store.get_message(message_id)
        if stored.conversationId != conversation_id or stored.senderId != sender_id:
            raise Forbidden("Message does not belong to this sender and conversation")
        return await self.publish(conversation_id, stored, exclude=exclude)

    def _already_published_locked(self, conversation_id: str, message_id: str) -> bool:
        cache = self.published_ids
        key = (conversation_id, message_id)
        if key in cache:
            cache.move_to_end(key)
            return True
        cache[key] = True
        while len(cache) > self.dedup_cache_size:
            cache.popitem(last=False)
        return False

    async def _safe_send(self, connection: Connection, payload: dict) -> bool:
        """Send to one connection. Returns False if the socket is dead."""
        try:
            await connection.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection.connection_id}: {e}")
            return False

    async def _safe_close(self, connection: Connection) -> None:
        """Close a socket dropped from the maps so its client reconnects."""
        try:
            await connection.websocket.close(code=CLOSE_INTERNAL_ERROR)
        except Exception as e:
            logger.debug(f"Close of connection {connection.connection_id} failed: {e}")

    def clear(self) -> None:
        """Drop all connections, rooms and dedup state (used by tests)."""
        with self._lock:
            self.connections.clear()
            self.rooms.clear()
            self.published_ids.clear()


# Global instance used by the socket endpoint and the REST write path
message_router = MessageRouter()

"""Client session: one signed-in surface (messages page or chat widget).

``MessagingClient`` owns the local view of conversations and wires the
REST API and the socket into a single reconciliation engine.

Read paths (conversation list, message polls, presence) log failures and
keep the last known state. The write path (``send``) raises ``SendFailed``
and never queues or retries.

Background tasks:
    - poll: re-fetches the focused conversation every ``poll_interval``
      whether or not the socket is up; a full fetch until one succeeds,
      then ``since`` the view's cursor
    - inbox: re-lists conversations on the same interval and pulls new
      messages for unfocused ones (drives unread counts)
    - presence: heartbeat plus active-user refresh every ``heartbeat_interval``
"""
import asyncio
import contextlib
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from marketchat.config import AppSettings, get_config
from marketchat.conversations.schemas import Conversation, Message
from marketchat.errors import MessagingError, SendFailed, TransportError

from .api import MessagingAPI
from .connection import SocketConnection
from .reconciliation import ReconciliationEngine
from .unread import UnreadTracker

logger = logging.getLogger(__name__)


class MessagingClient:
    """Live conversation state for one user on one surface.

    Args:
        api: REST client bound to the user's credential.
        user_id: The signed-in user.
        socket: Optional socket service. Without one the client runs on
            polling alone.
        poll_interval: Seconds between fallback polls and inbox refreshes.
        heartbeat_interval: Seconds between presence heartbeats.
        self_sent_ttl: How long a just-sent message ID is remembered.
        clock: Monotonic clock for the self-sent marker.
    """

    def __init__(
        self,
        api: MessagingAPI,
        user_id: str,
        socket: Optional[SocketConnection] = None,
        poll_interval: float = 5.0,
        heartbeat_interval: float = 30.0,
        self_sent_ttl: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.user_id = user_id
        self.socket = socket
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval

        self.unread = UnreadTracker()
        self.engine = ReconciliationEngine(user_id, self.unread, self_sent_ttl, clock)
        self.conversations: Dict[str, Conversation] = {}
        self.active_users: Set[str] = set()

        self._loaded = False
        self._poll_task: Optional[asyncio.Task] = None
        self._inbox_task: Optional[asyncio.Task] = None
        self._presence_task: Optional[asyncio.Task] = None

        if socket is not None:
            socket.on_message(self._on_frame)
            socket.on_reconnect(self._on_reconnect)

    @classmethod
    def from_config(
        cls,
        user_id: str,
        token: str,
        config: Optional[AppSettings] = None,
    ) -> "MessagingClient":
        """Build a client with REST and socket endpoints from ``client`` settings."""
        config = config or get_config()
        settings = config.client
        base_url = settings.base_url.rstrip("/")
        api = MessagingAPI(base_url, token, timeout=settings.request_timeout_seconds)
        socket = SocketConnection(
            base_url.replace("http", "ws", 1) + "/ws",
            token,
            backoff_initial=settings.reconnect_backoff_initial,
            backoff_max=settings.reconnect_backoff_max,
            connect_timeout=settings.request_timeout_seconds,
        )
        return cls(
            api,
            user_id,
            socket=socket,
            poll_interval=settings.poll_interval_seconds,
            heartbeat_interval=config.presence.heartbeat_interval_seconds,
            self_sent_ttl=settings.self_sent_ttl_seconds,
        )

    @property
    def focused_id(self) -> Optional[str]:
        return self.unread.focused_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Connect, load the conversation list and start background loops."""
        if self.socket is not None:
            try:
                await self.socket.connect()
            except TransportError as e:
                logger.warning(f"[Client] Socket unavailable, polling only: {e.message}")
                self.socket.connect_in_background()

        await self.load_conversations()
        await self.refresh_presence()

        self._inbox_task = asyncio.create_task(self._inbox_loop())
        self._presence_task = asyncio.create_task(self._presence_loop())
        logger.info(f"[Client] Session started for {self.user_id}")

    async def stop(self) -> None:
        for task in (self._poll_task, self._inbox_task, self._presence_task):
            await _cancel(task)
        self._poll_task = self._inbox_task = self._presence_task = None
        if self.socket is not None:
            await self.socket.disconnect()
        await self.api.aclose()
        logger.info(f"[Client] Session stopped for {self.user_id}")

    # =========================================================================
    # Conversations
    # =========================================================================

    async def load_conversations(self) -> List[Conversation]:
        """Fetch the conversation list and seed unread counts.

        On the first load each conversation's cursor is set to its
        ``lastMessageSeq`` so existing history is never counted as unread.
        """
        try:
            conversations = await self.api.list_conversations()
        except MessagingError as e:
            logger.warning(f"[Client] Failed to load conversations: {e.message}")
            return list(self.conversations.values())

        for conversation in conversations:
            self.conversations[conversation.id] = conversation
            if not self._loaded:
                view = self.engine.view(conversation.id)
                view.cursor = max(view.cursor, conversation.lastMessageSeq)
        self.unread.seed(c.id for c in conversations)
        self._loaded = True
        return conversations

    async def start_conversation(self, recipient_id: str) -> Conversation:
        """Create or reuse the conversation with ``recipient_id``. Raises on failure."""
        conversation = await self.api.create_conversation(recipient_id)
        self.conversations.setdefault(conversation.id, conversation)
        self.unread.seed([conversation.id])
        return conversation

    async def refresh_inbox(self) -> int:
        """Pull new messages for unfocused conversations that moved on.

        Returns:
            Number of messages that were new to this client.
        """
        added = 0
        for conversation in await self.load_conversations():
            if conversation.id == self.focused_id:
                continue
            view = self.engine.view(conversation.id)
            if conversation.lastMessageSeq > view.cursor:
                added += await self.refresh(conversation.id, since=view.cursor)
        return added

    # =========================================================================
    # Focus
    # =========================================================================

    async def focus(self, conversation_id: str) -> None:
        """Open a conversation: join its room, fetch it, start polling it.

        The previous conversation's poll is cancelled and its room is left
        (joining a room leaves the old one server-side). In-flight sends
        are not cancelled.
        """
        await _cancel(self._poll_task)
        self._poll_task = None

        self.unread.mark_focused(conversation_id)
        await self._join_room(conversation_id)
        await self.refresh(conversation_id)
        self._poll_task = asyncio.create_task(self._poll_loop(conversation_id))

    async def unfocus(self) -> None:
        """Close the conversation pane."""
        await _cancel(self._poll_task)
        self._poll_task = None
        if self.socket is not None and self.socket.connected:
            try:
                await self.socket.leave_room()
            except TransportError as e:
                logger.debug(f"[Client] leave_room not sent: {e.message}")
        self.unread.clear_focus()

    async def refresh(self, conversation_id: str, since: Optional[int] = None) -> int:
        """Fetch messages over REST and reconcile them. Read path: never raises."""
        try:
            messages = await self.api.list_messages(conversation_id, since=since)
        except MessagingError as e:
            logger.warning(f"[Client] Fetch of {conversation_id} failed: {e.message}")
            return 0
        return self.engine.apply_fetch(conversation_id, messages, since=since)

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, conversation_id: str, text: str) -> Message:
        """Send a message: REST first, then the advisory socket emit.

        Raises:
            SendFailed: The REST write failed. Nothing is inserted locally.
        """
        connection_id = self.socket.connection_id if self.socket is not None else None
        try:
            message = await self.api.send_message(conversation_id, text, connection_id=connection_id)
        except MessagingError as e:
            logger.warning(f"[Client] Send to {conversation_id} failed: {e.message}")
            raise SendFailed(e) from e

        self.engine.mark_self_sent(message.id)
        self.engine.apply(message)

        if self.socket is not None and self.socket.connected:
            try:
                await self.socket.send_message(message)
            except TransportError as e:
                logger.debug(f"[Client] Socket emit skipped for {message.id}: {e.message}")
        return message

    # =========================================================================
    # Presence
    # =========================================================================

    async def refresh_presence(self) -> None:
        """Heartbeat, then refresh the active-user set. Read path: never raises."""
        try:
            await self.api.heartbeat()
        except MessagingError as e:
            logger.warning(f"[Client] Heartbeat failed: {e.message}")
        try:
            self.active_users = await self.api.active_users()
        except MessagingError as e:
            logger.warning(f"[Client] Active users refresh failed: {e.message}")

    def is_active(self, user_id: str) -> bool:
        """True for "Active now", False for "Offline"."""
        return user_id in self.active_users

    # =========================================================================
    # View accessors
    # =========================================================================

    def messages(self, conversation_id: str) -> List[Message]:
        return self.engine.messages(conversation_id)

    def unread_count(self, conversation_id: str) -> int:
        return self.unread.count(conversation_id)

    def total_unread(self) -> int:
        return self.unread.total_unread()

    # =========================================================================
    # Socket callbacks and loops
    # =========================================================================

    async def _on_frame(self, frame: dict) -> None:
        if frame.get("type") != "receive_message":
            return
        try:
            message = Message.model_validate(frame.get("message"))
        except ValidationError as e:
            logger.warning(f"[Client] Dropping malformed push: {e}")
            return
        self.unread.seed([message.conversationId])
        self.engine.apply(message)

    async def _on_reconnect(self) -> None:
        conversation_id = self.focused_id
        if conversation_id is None:
            return
        logger.info(f"[Client] Reconnected, resyncing {conversation_id}")
        await self._join_room(conversation_id)
        await self.refresh(conversation_id)

    async def _join_room(self, conversation_id: str) -> None:
        if self.socket is None or not self.socket.connected:
            return
        try:
            await self.socket.join_room(conversation_id)
        except TransportError as e:
            logger.info(f"[Client] join_room deferred until reconnect: {e.message}")

    async def _poll_loop(self, conversation_id: str) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            # Full fetch until one succeeds, then incremental from the cursor
            view = self.engine.view(conversation_id)
            await self.refresh(conversation_id, since=view.cursor if view.synced else None)

    async def _inbox_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.refresh_inbox()

    async def _presence_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.refresh_presence()


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

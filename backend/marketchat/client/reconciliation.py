"""Client-side reconciliation of pushed, polled and self-sent messages.

Every message the client learns about, whatever the path (initial fetch,
socket push, fallback poll, inbox refresh or the REST response to its own
send), goes through ``ReconciliationEngine.apply``. Two rules make the
paths safe to mix:

    - Dedup by ``id``: a message already in the view is discarded.
    - Order by ``(createdAt, seq)``: never by arrival order.

The recently-self-sent set only short-circuits echoes of the local user's
messages before the view is searched; id dedup alone is what keeps the
view correct.
"""
import bisect
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from marketchat.conversations.schemas import Message

from .unread import UnreadTracker

logger = logging.getLogger(__name__)

DEFAULT_SELF_SENT_TTL_SECONDS = 5.0


class ConversationView:
    """Ordered, id-deduplicated messages of one conversation."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self.messages: List[Message] = []
        self._keys: List[tuple] = []
        self._ids: Set[str] = set()
        # Highest seq known to have no gaps below it. Only REST fetches move
        # it; a push can skip over a message this client never received.
        self.cursor = 0
        # True once a full fetch of the conversation has succeeded
        self.synced = False

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self.messages)

    def insert(self, message: Message) -> bool:
        """Insert at the display position. Returns False for a duplicate."""
        if message.id in self._ids:
            return False
        key = message.sort_key()
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self.messages.insert(index, message)
        self._ids.add(message.id)
        return True

    def mark_fetched(self, messages: Iterable[Message], full: bool) -> None:
        """Advance the cursor after a successful REST fetch.

        Args:
            messages: Everything the server returned for the request.
            full: The request had no ``since`` bound.
        """
        self.cursor = max([self.cursor, *(m.seq for m in messages)])
        if full:
            self.synced = True

    def texts(self) -> List[str]:
        return [m.text for m in self.messages]


class ReconciliationEngine:
    """Merges every message source into per-conversation views.

    Args:
        local_user_id: The signed-in user; their messages never count as unread.
        unread: Tracker updated for other users' messages.
        self_sent_ttl: How long a just-sent ID is remembered.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        local_user_id: str,
        unread: Optional[UnreadTracker] = None,
        self_sent_ttl: float = DEFAULT_SELF_SENT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.local_user_id = local_user_id
        self.unread = unread if unread is not None else UnreadTracker()
        self.self_sent_ttl = self_sent_ttl
        self._clock = clock
        self._views: Dict[str, ConversationView] = {}
        self._self_sent: Dict[str, float] = {}

    def view(self, conversation_id: str) -> ConversationView:
        view = self._views.get(conversation_id)
        if view is None:
            view = self._views[conversation_id] = ConversationView(conversation_id)
        return view

    def messages(self, conversation_id: str) -> List[Message]:
        return list(self.view(conversation_id).messages)

    def apply(self, message: Message) -> bool:
        """Reconcile one message. Returns True if it was new to this client."""
        view = self.view(message.conversationId)
        if self.is_recently_self_sent(message.id) and message.id in view:
            logger.debug("[Client] Own echo dropped: %s", message.id)
            return False
        if not view.insert(message):
            return False
        if message.senderId != self.local_user_id:
            self.unread.increment(message.conversationId)
        return True

    def apply_many(self, messages: Iterable[Message]) -> int:
        """Reconcile a batch (a REST fetch). Returns how many were new."""
        return sum(1 for m in messages if self.apply(m))

    def apply_fetch(
        self,
        conversation_id: str,
        messages: List[Message],
        since: Optional[int] = None,
    ) -> int:
        """Reconcile a successful REST fetch and move the view's cursor.

        Returns:
            How many messages were new.
        """
        added = self.apply_many(messages)
        self.view(conversation_id).mark_fetched(messages, full=since is None)
        return added

    def mark_self_sent(self, message_id: str) -> None:
        self._prune_self_sent()
        self._self_sent[message_id] = self._clock() + self.self_sent_ttl

    def is_recently_self_sent(self, message_id: str) -> bool:
        expires = self._self_sent.get(message_id)
        return expires is not None and self._clock() < expires

    def _prune_self_sent(self) -> None:
        now = self._clock()
        for message_id in [m for m, exp in self._self_sent.items() if exp <= now]:
            del self._self_sent[message_id]

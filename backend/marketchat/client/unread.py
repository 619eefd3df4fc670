"""Per-session unread counts.

Unread state lives only in the client process: it is seeded to zero on
initial load and resets when the client restarts. There are no server-side
read receipts.
"""
import logging
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Maps conversation ID to unread count and remembers the focused one.

    Invariant: the focused conversation always has a count of zero.
    """

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._focused: Optional[str] = None

    @property
    def focused_id(self) -> Optional[str]:
        return self._focused

    def seed(self, conversation_ids: Iterable[str]) -> None:
        """Start tracking conversations at zero. Existing counts are kept."""
        for conversation_id in conversation_ids:
            self._counts.setdefault(conversation_id, 0)

    def mark_focused(self, conversation_id: str) -> None:
        """Focus a conversation, clear its count and unfocus the previous one."""
        previous = self._focused
        self._focused = conversation_id
        self._counts[conversation_id] = 0
        if previous and previous != conversation_id:
            logger.debug("[Unread] Focus moved %s -> %s", previous, conversation_id)

    def clear_focus(self) -> None:
        self._focused = None

    def increment(self, conversation_id: str) -> int:
        """Count one unseen message. A no-op for the focused conversation."""
        if conversation_id == self._focused:
            self._counts[conversation_id] = 0
            return 0
        count = self._counts.get(conversation_id, 0) + 1
        self._counts[conversation_id] = count
        return count

    def count(self, conversation_id: str) -> int:
        return self._counts.get(conversation_id, 0)

    def total_unread(self) -> int:
        """Badge count across every conversation."""
        return sum(self._counts.values())

    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

"""In-memory presence tracker.

A user is active while their last heartbeat is younger than the TTL.
Records are never deleted; they simply age out of the active set.

Thread Safety:
    Guarded by a ``threading.Lock`` so callers on any thread (the event
    loop, or the per-connection loops the test client runs) can record
    heartbeats.
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional, Set

from marketchat.config import get_config

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 45.0


class PresenceTracker:
    """Tracks ``userId -> lastHeartbeatAt``."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._last_heartbeat: Dict[str, float] = {}
        self._lock = threading.Lock()

    def heartbeat(self, user_id: str) -> float:
        """Record a heartbeat for ``user_id`` and return its timestamp."""
        now = self._clock()
        with self._lock:
            first = user_id not in self._last_heartbeat
            self._last_heartbeat[user_id] = now
        if first:
            logger.debug("[Presence] First heartbeat from %s", user_id)
        return now

    def last_heartbeat(self, user_id: str) -> Optional[float]:
        with self._lock:
            return self._last_heartbeat.get(user_id)

    def is_active(self, user_id: str) -> bool:
        last = self.last_heartbeat(user_id)
        return last is not None and self._clock() - last < self.ttl_seconds

    def active_users(self) -> Set[str]:
        now = self._clock()
        with self._lock:
            return {
                user_id
                for user_id, last in self._last_heartbeat.items()
                if now - last < self.ttl_seconds
            }


_tracker: Optional[PresenceTracker] = None


def get_tracker() -> PresenceTracker:
    """Return the global tracker, creating it from settings on first use."""
    global _tracker
    if _tracker is None:
        _tracker = PresenceTracker(ttl_seconds=get_config().presence.ttl_seconds)
    return _tracker


def set_tracker(tracker: Optional[PresenceTracker]) -> None:
    """Set (or clear) the global tracker."""
    global _tracker
    _tracker = tracker

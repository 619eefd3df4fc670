"""Best-effort user presence from periodic heartbeats."""
from .tracker import PresenceTracker, get_tracker, set_tracker

__all__ = ["PresenceTracker", "get_tracker", "set_tracker"]

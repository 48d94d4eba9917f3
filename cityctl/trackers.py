"""Crash-loop and idle detection for agent sessions."""

import logging
from collections import deque
from datetime import datetime, timedelta

from .session import SessionProvider

logger = logging.getLogger(__name__)


class CrashTracker:
    """Quarantines sessions that keep getting restarted.

    Every start the reconciler makes is recorded. Once max_restarts starts
    fall inside the sliding window, the session is quarantined and not
    started again until the oldest of those starts ages out of the window.
    max_restarts of 0 disables tracking.
    """

    def __init__(self, max_restarts: int = 5, window: float = 3600):
        self.max_restarts = max_restarts
        self.window = timedelta(seconds=window)
        self._starts: dict[str, deque[datetime]] = {}

    def _prune(self, name: str, now: datetime) -> deque[datetime]:
        starts = self._starts.get(name)
        if starts is None:
            return deque()
        while starts and now - starts[0] >= self.window:
            starts.popleft()
        if not starts:
            del self._starts[name]
        return starts

    def record_start(self, name: str, now: datetime) -> bool:
        """Record a start; return True if this start tripped the quarantine."""
        if self.max_restarts <= 0:
            return False
        self._prune(name, now)
        starts = self._starts.setdefault(name, deque())
        starts.append(now)
        return len(starts) >= self.max_restarts

    def is_quarantined(self, name: str, now: datetime) -> bool:
        if self.max_restarts <= 0:
            return False
        return len(self._prune(name, now)) >= self.max_restarts

    def clear(self, name: str) -> None:
        self._starts.pop(name, None)


class IdleTracker:
    """Flags sessions whose last output is older than their idle timeout."""

    def __init__(self, provider: SessionProvider):
        self.provider = provider

    def is_idle(self, name: str, timeout: float, now: datetime) -> bool:
        if timeout <= 0:
            return False
        last = self.provider.last_activity(name)
        if last is None:
            return False
        idle = (now - last).total_seconds()
        if idle > timeout:
            logger.debug("%s idle for %.0fs (timeout %.0fs)", name, idle, timeout)
            return True
        return False

import threading
from collections import deque
from typing import List, Optional

from punch_relay.models import AttendanceEvent


class HistoryStore:
    """Bounded ring buffer of recent events for dashboards and new subscribers"""

    def __init__(self, capacity: int = 200):
        if capacity <= 0:
            raise ValueError("History capacity must be greater than 0")
        self._events = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._events.maxlen

    def append(self, event: AttendanceEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent(self, limit: Optional[int] = None) -> List[AttendanceEvent]:
        """Return events oldest first, optionally only the newest ``limit``."""
        with self._lock:
            events = list(self._events)
        if limit is not None and limit >= 0:
            events = events[-limit:] if limit else []
        return events

    def resize(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("History capacity must be greater than 0")
        with self._lock:
            # deque(maxlen=...) keeps the newest entries when shrinking
            self._events = deque(self._events, maxlen=capacity)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

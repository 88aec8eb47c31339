import threading
from datetime import datetime
from typing import Any, Dict

COUNTERS = (
    "received",
    "queued",
    "processed",
    "failed",
    "retried",
    "dropped",
    "errors",
    "duplicates",
    "malformed",
    "polls",
    "reconnects",
)


class StatsCollector:
    """Monotonic pipeline counters"""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = {name: 0 for name in COUNTERS}
        self.started_at = datetime.now()

    def increment(self, name: str, amount: int = 1) -> int:
        if name not in self._counters:
            raise KeyError(f"Unknown counter: {name}")
        if amount < 0:
            raise ValueError("Counters only move forward")
        with self._lock:
            self._counters[name] += amount
            return self._counters[name]

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = dict(self._counters)
        data["started_at"] = self.started_at.strftime("%Y-%m-%d %H:%M:%S")
        data["uptime_seconds"] = int((datetime.now() - self.started_at).total_seconds())
        return data

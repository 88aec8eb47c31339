"""In-process broadcaster for live observers (Server-Sent Events)."""

import json
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from punch_relay.shared.logger import app_logger

EVENT_ADMITTED = "event-admitted"
DELIVERY_OUTCOME = "delivery-outcome"
QUEUE_STATUS = "queue-status"
LINK_STATE_CHANGED = "link-state-changed"
STATS_SNAPSHOT = "stats-snapshot"

TOPICS = (
    EVENT_ADMITTED,
    DELIVERY_OUTCOME,
    QUEUE_STATUS,
    LINK_STATE_CHANGED,
    STATS_SNAPSHOT,
)


@dataclass
class Subscription:
    """A subscriber's message queue plus the state it started from"""

    queue: "queue.Queue[str]"
    snapshot: Dict[str, Any]


class SubscriberHub:
    """Thread-safe pub/sub fan-out to live observers.

    Publishing never blocks: each subscriber has its own bounded queue and
    a slow subscriber loses its oldest pending messages instead.
    """

    def __init__(
        self,
        max_queue_size: int = 100,
        snapshot_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self._subscribers: set = set()
        self._lock = threading.Lock()
        self._max_queue_size = max_queue_size
        self._snapshot_provider = snapshot_provider
        self.dropped_messages = 0

    def set_snapshot_provider(self, provider: Callable[[], Dict[str, Any]]) -> None:
        self._snapshot_provider = provider

    def subscribe(self) -> Subscription:
        """Register a subscriber and hand back a point-in-time snapshot.

        The queue is registered before the snapshot is taken, so anything
        published afterwards reaches the queue. A message may appear in both
        the snapshot and the queue, but never in neither.
        """
        q = queue.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.add(q)
        snapshot = self._snapshot_provider() if self._snapshot_provider else {}
        return Subscription(queue=q, snapshot=snapshot)

    def unsubscribe(self, subscriber) -> None:
        """Remove a subscriber (safe to call multiple times)."""
        if isinstance(subscriber, Subscription):
            subscriber = subscriber.queue
        with self._lock:
            self._subscribers.discard(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, topic: str, payload: Any) -> None:
        """Push a message to all subscribers without blocking."""
        if topic not in TOPICS:
            app_logger.warning(f"Publishing to unknown topic '{topic}'")

        message = json.dumps(
            {
                "topic": topic,
                "data": payload,
                "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            },
            ensure_ascii=False,
            default=str,
        )

        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber.put_nowait(message)
            except queue.Full:
                # Drop the oldest message for this subscriber only
                try:
                    subscriber.get_nowait()
                    with self._lock:
                        self.dropped_messages += 1
                except queue.Empty:
                    pass
                try:
                    subscriber.put_nowait(message)
                except queue.Full:
                    continue

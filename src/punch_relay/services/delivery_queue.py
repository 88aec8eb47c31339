import itertools
import threading
from collections import deque
from datetime import datetime
from typing import Callable, List, Optional

from punch_relay.models import AttendanceEvent, QueueItem
from punch_relay.shared.logger import app_logger


class DeliveryQueue:
    """Bounded FIFO of events awaiting delivery.

    Admission never blocks: when the queue is full the oldest item is
    evicted and counted in ``dropped``. Retried items are re-admitted at the
    back, behind newer traffic.
    """

    def __init__(self, capacity: int = 500, on_drop: Optional[Callable[[int], None]] = None):
        if capacity <= 0:
            raise ValueError("Queue capacity must be greater than 0")
        self._capacity = capacity
        self._items = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._ids = itertools.count(1)
        self.dropped = 0
        self._on_drop = on_drop

    @property
    def capacity(self) -> int:
        return self._capacity

    def enqueue(self, event: AttendanceEvent) -> int:
        """Admit a new event and return its queue id."""
        item = QueueItem(event=event, enqueued_at=datetime.now())
        return self.requeue(item)

    def requeue(self, item: QueueItem) -> int:
        """Admit an existing item (e.g. a retry) at the back of the queue."""
        with self._lock:
            if not item.queue_id:
                item.queue_id = next(self._ids)
            self._evict_for(1)
            self._items.append(item)
            self._not_empty.notify()
            return item.queue_id

    def dequeue_batch(self, max_n: int) -> List[QueueItem]:
        with self._lock:
            batch = []
            while self._items and len(batch) < max_n:
                batch.append(self._items.popleft())
            return batch

    def wait_for_items(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is non-empty or the timeout elapses."""
        with self._not_empty:
            if not self._items:
                self._not_empty.wait(timeout)
            return bool(self._items)

    def wake(self) -> None:
        """Release any thread blocked in wait_for_items."""
        with self._not_empty:
            self._not_empty.notify_all()

    def clear(self) -> int:
        """Drop every queued item and return how many were dropped."""
        with self._lock:
            dropped = len(self._items)
            self._items.clear()
            self.dropped += dropped
        if dropped:
            self._notify_drop(dropped)
            app_logger.info(f"[QUEUE] Cleared {dropped} queued item(s)")
        return dropped

    def resize(self, capacity: int) -> int:
        """Change capacity, evicting oldest items if needed. Returns evicted count."""
        if capacity <= 0:
            raise ValueError("Queue capacity must be greater than 0")
        with self._lock:
            self._capacity = capacity
            before = self.dropped
            self._evict_for(0)
            return self.dropped - before

    def snapshot(self) -> List[QueueItem]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _evict_for(self, incoming: int) -> None:
        # Caller holds the lock
        while self._items and len(self._items) + incoming > self._capacity:
            evicted = self._items.popleft()
            self.dropped += 1
            app_logger.warning(
                f"[QUEUE] Queue full ({self._capacity}), dropped oldest event "
                f"{evicted.event.id} for subject {evicted.event.subject_id}"
            )
            self._notify_drop(1)

    def _notify_drop(self, count: int) -> None:
        if self._on_drop:
            self._on_drop(count)

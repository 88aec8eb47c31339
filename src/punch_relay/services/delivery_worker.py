import threading
import time
from typing import Any, Dict, Optional

from punch_relay.events import DELIVERY_OUTCOME, QUEUE_STATUS, SubscriberHub
from punch_relay.models import DeliveryOutcome, QueueItem
from punch_relay.services.delivery_queue import DeliveryQueue
from punch_relay.services.sink_client import SinkClient
from punch_relay.services.stats_collector import StatsCollector
from punch_relay.shared.logger import app_logger

TUNABLES = (
    "max_concurrent",
    "batch_size",
    "max_retries",
    "base_delay",
    "max_delay",
    "processing_delay",
)


class DeliveryWorkerPool:
    """Drains the delivery queue into the sink under a concurrency cap.

    A single dispatcher thread pulls batches and starts one delivery thread
    per item. Failed deliveries are re-admitted at the back of the queue
    after an exponential backoff; once retries are exhausted the failure is
    published and the item is dropped.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        sink: SinkClient,
        stats: StatsCollector,
        hub: SubscriberHub,
        max_concurrent: int = 5,
        batch_size: int = 10,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        processing_delay: float = 0.1,
    ):
        self.queue = queue
        self.sink = sink
        self.stats = stats
        self.hub = hub
        self.max_concurrent = max_concurrent
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.processing_delay = processing_delay

        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._paused = False
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._retry_timers: Dict[int, Any] = {}

    # Lifecycle

    def start(self) -> None:
        with self._lock:
            if self._running:
                app_logger.warning("[QUEUE] Delivery worker pool is already running")
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._run, daemon=True, name="DeliveryDispatcher"
            )
            self._thread.start()
        app_logger.info(
            f"[QUEUE] Delivery worker pool started (max_concurrent={self.max_concurrent}, "
            f"batch_size={self.batch_size}, max_retries={self.max_retries})"
        )

    def stop(self, wait_timeout: float = 3.0) -> None:
        """Stop dispatching. Pending retries go straight back into the queue."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            thread = self._thread
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()

        self.queue.wake()
        if thread and thread.is_alive():
            thread.join(timeout=wait_timeout)

        for timer, item in timers:
            timer.cancel()
            self.queue.requeue(item)
        app_logger.info("[QUEUE] Delivery worker pool stopped")

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        app_logger.info("[QUEUE] Delivery paused; in-flight deliveries will finish")
        self.publish_status()

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        self.queue.wake()
        app_logger.info("[QUEUE] Delivery resumed")
        self.publish_status()

    def configure(self, **settings) -> None:
        """Apply runtime settings (max_concurrent, batch_size, retry timings)."""
        with self._lock:
            for key, value in settings.items():
                if key not in TUNABLES:
                    raise AttributeError(f"Unknown worker setting: {key}")
                setattr(self, key, value)
        self.queue.wake()

    # State

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        with self._lock:
            return self._peak_in_flight

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def pending_retries(self) -> int:
        with self._lock:
            return len(self._retry_timers)

    def retry_delay(self, attempt_count: int) -> float:
        """Backoff before re-admitting an item that has failed ``attempt_count + 1`` times."""
        return min(self.base_delay * (2 ** attempt_count), self.max_delay)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            in_flight, paused = self._in_flight, self._paused
            pending = len(self._retry_timers)
        return {
            "length": len(self.queue),
            "capacity": self.queue.capacity,
            "dropped": self.queue.dropped,
            "in_flight": in_flight,
            "max_concurrent": self.max_concurrent,
            "pending_retries": pending,
            "paused": paused,
        }

    def publish_status(self) -> None:
        self.hub.publish(QUEUE_STATUS, self.status())

    # Dispatch

    def _run(self) -> None:
        while self.running:
            try:
                if self.paused:
                    time.sleep(self.processing_delay)
                    continue
                if not self.queue.wait_for_items(timeout=0.5):
                    continue
                if not self.running or self.paused:
                    continue
                if self.dispatch_batch() == 0:
                    # No free slots; recheck shortly
                    time.sleep(self.processing_delay)
            except Exception as e:
                self.stats.increment("errors")
                app_logger.error(f"[QUEUE] Dispatcher error: {e}", exc_info=True)
                time.sleep(self.processing_delay)

    def dispatch_batch(self) -> int:
        """Start deliveries for as many items as free slots allow."""
        with self._lock:
            available = self.max_concurrent - self._in_flight
            if available <= 0 or self._paused:
                return 0
            batch = self.queue.dequeue_batch(min(available, self.batch_size))
            self._in_flight += len(batch)
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)

        for item in batch:
            threading.Thread(
                target=self._deliver,
                args=(item,),
                daemon=True,
                name=f"Delivery-{item.queue_id}",
            ).start()

        if batch:
            self.publish_status()
        return len(batch)

    def _deliver(self, item: QueueItem) -> None:
        attempt = item.attempt_count + 1
        try:
            outcome = self.sink.deliver(item.event, attempt=attempt)
        except Exception as e:
            app_logger.error(
                f"[SINK] Unexpected error delivering event {item.event.id}: {e}",
                exc_info=True,
            )
            outcome = DeliveryOutcome(
                success=False, payload_used={}, response_or_error=str(e), attempt=attempt
            )
        finally:
            with self._lock:
                self._in_flight -= 1
            self.queue.wake()

        try:
            self._handle_outcome(item, outcome)
        except Exception as e:
            self.stats.increment("errors")
            app_logger.error(f"[QUEUE] Error handling delivery outcome: {e}", exc_info=True)

    def _handle_outcome(self, item: QueueItem, outcome: DeliveryOutcome) -> None:
        message = {
            "event": item.event.to_dict(),
            "outcome": outcome.to_dict(),
            "final": True,
        }

        if outcome.success:
            self.stats.increment("processed")
            app_logger.info(
                f"[SINK] Delivered event {item.event.id} for subject "
                f"{item.event.subject_id} (attempt {outcome.attempt})"
            )
        else:
            self.stats.increment("errors")
            if item.attempt_count < self.max_retries:
                delay = self.retry_delay(item.attempt_count)
                item.attempt_count += 1
                self.stats.increment("retried")
                self._schedule_retry(item, delay)
                message.update(final=False, retry_in=delay)
                app_logger.warning(
                    f"[SINK] Delivery of event {item.event.id} failed "
                    f"(attempt {outcome.attempt}), retrying in {delay:.2f}s"
                )
            else:
                self.stats.increment("failed")
                app_logger.error(
                    f"[SINK] Giving up on event {item.event.id} for subject "
                    f"{item.event.subject_id} after {outcome.attempt} attempt(s): "
                    f"{outcome.response_or_error}"
                )

        self.hub.publish(DELIVERY_OUTCOME, message)
        self.publish_status()

    def _schedule_retry(self, item: QueueItem, delay: float) -> None:
        timer = threading.Timer(delay, self._readmit, args=(item,))
        timer.daemon = True
        with self._lock:
            if not self._running:
                # Pool is stopping: keep the item without waiting
                self.queue.requeue(item)
                return
            self._retry_timers[item.queue_id] = (timer, item)
        timer.start()

    def _readmit(self, item: QueueItem) -> None:
        with self._lock:
            if self._retry_timers.pop(item.queue_id, None) is None:
                # Already handed back by stop()
                return
        self.queue.requeue(item)
        self.publish_status()

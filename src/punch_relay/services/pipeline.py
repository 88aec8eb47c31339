"""The attendance pipeline: one object that owns every moving part.

Push records arrive through the link's realtime channel, poll records
through PollProducer. Both meet in ``ingest_event`` which appends to history
and enqueues for delivery under a single lock, so history order and queue
order agree.
"""

import queue
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from punch_relay.config import PipelineConfig
from punch_relay.device import DeviceDriver, create_driver
from punch_relay.events import EVENT_ADMITTED, STATS_SNAPSHOT, SubscriberHub, Subscription
from punch_relay.models import AttendanceEvent, TimestampSource
from punch_relay.services.delivery_queue import DeliveryQueue
from punch_relay.services.delivery_worker import DeliveryWorkerPool
from punch_relay.services.device_link import DeviceLinkManager
from punch_relay.services.history_store import HistoryStore
from punch_relay.services.normalizer import get_field_profile, normalize
from punch_relay.services.poll_producer import PollProducer
from punch_relay.services.scheduler_service import SchedulerService
from punch_relay.services.sink_client import SinkClient
from punch_relay.services.stats_collector import StatsCollector
from punch_relay.services.subject_directory import SubjectDirectory
from punch_relay.shared.logger import app_logger

# Config key -> worker pool attribute
_POOL_SETTINGS = {
    "batch_size": "batch_size",
    "max_concurrent": "max_concurrent",
    "max_retries": "max_retries",
    "retry_base_delay": "base_delay",
    "retry_max_delay": "max_delay",
    "processing_delay": "processing_delay",
}

# Config key -> link manager attribute
_LINK_SETTINGS = {
    "link_retry_base_delay": "retry_base_delay",
    "link_retry_max_delay": "retry_max_delay",
    "link_max_retries": "max_retries",
    "link_cooldown": "cooldown",
}


class AttendancePipeline:
    def __init__(
        self,
        config: PipelineConfig,
        driver: Optional[DeviceDriver] = None,
        session=None,
    ):
        self.config = config
        self.profile = get_field_profile(config.device_field_profile)

        self.stats = StatsCollector()
        self.hub = SubscriberHub(max_queue_size=config.subscriber_queue_size)
        self.history = HistoryStore(config.history_capacity)
        self.queue = DeliveryQueue(config.queue_capacity, on_drop=self._on_drop)
        self.directory = SubjectDirectory()

        self.sink = SinkClient(
            config.sink_url,
            timeout=config.sink_timeout,
            shapes=config.sink_payload_shapes,
            api_key=config.sink_api_key,
            directory=self.directory,
            session=session,
        )
        self.pool = DeliveryWorkerPool(
            self.queue,
            self.sink,
            self.stats,
            self.hub,
            max_concurrent=config.max_concurrent,
            batch_size=config.batch_size,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            processing_delay=config.processing_delay,
        )
        self.link = DeviceLinkManager(
            driver or create_driver(config),
            config.device_ip,
            config.device_port,
            self.hub,
            self.stats,
            timeout=config.device_timeout,
            directory=self.directory,
            channel_size=config.realtime_channel_size,
            retry_base_delay=config.link_retry_base_delay,
            retry_max_delay=config.link_retry_max_delay,
            max_retries=config.link_max_retries,
            cooldown=config.link_cooldown,
        )
        self.poller = PollProducer(
            self.link,
            self.ingest_event,
            self.stats,
            profile=self.profile,
            backfill=config.poll_backfill,
        )
        self.scheduler = SchedulerService(
            self.poll_now,
            self.publish_stats,
            poll_interval=config.poll_interval,
            stats_interval=config.stats_interval,
        )

        self._ingest_lock = threading.Lock()
        self._config_lock = threading.Lock()
        self._recent_keys: "OrderedDict[Any, None]" = OrderedDict()
        self._running = False
        self._stopping = threading.Event()
        self._ingest_thread: Optional[threading.Thread] = None

        self.hub.set_snapshot_provider(self.snapshot)

    # Lifecycle

    def start(self) -> None:
        if self._running:
            app_logger.warning("Pipeline is already running")
            return
        self._running = True
        self._stopping.clear()

        self.pool.start()
        self._ingest_thread = threading.Thread(
            target=self._consume_realtime, daemon=True, name="RealtimeIngest"
        )
        self._ingest_thread.start()
        self.link.start()
        self.scheduler.start()
        app_logger.info(
            f"Pipeline started for device {self.config.device_ip}:{self.config.device_port}"
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        app_logger.info("Shutting down pipeline...")

        self.scheduler.stop()
        self.link.stop(reason="Pipeline stopped")
        self._stopping.set()
        if self._ingest_thread and self._ingest_thread.is_alive():
            self._ingest_thread.join(timeout=3)
        self.pool.stop()
        self.sink.close()
        app_logger.info("Pipeline shutdown completed")

    @property
    def running(self) -> bool:
        return self._running

    # Ingestion

    def ingest(
        self, raw: Any, source_address: str, source: str = "push"
    ) -> Optional[AttendanceEvent]:
        """Normalize a raw record and admit it. Returns None for duplicates."""
        event = normalize(raw, source_address, self.profile)
        if event.timestamp_source == TimestampSource.SERVER:
            self.stats.increment("malformed")
        return self.ingest_event(event, source=source)

    def ingest_event(
        self, event: AttendanceEvent, source: str = "poll"
    ) -> Optional[AttendanceEvent]:
        self.stats.increment("received")
        with self._ingest_lock:
            if self._seen(event):
                self.stats.increment("duplicates")
                app_logger.info(
                    f"Skipping duplicate {source} punch for subject {event.subject_id} "
                    f"at {event.occurred_at}"
                )
                return None
            self.history.append(event)
            queue_id = self.queue.enqueue(event)
            self.stats.increment("queued")

        app_logger.info(
            f"[QUEUE] Queued {source} punch {event.id} for subject {event.subject_id} "
            f"({event.punch_type.value}, queue id {queue_id})"
        )
        self.hub.publish(EVENT_ADMITTED, {"event": event.to_dict(), "source": source})
        self.pool.publish_status()
        return event

    def _seen(self, event: AttendanceEvent) -> bool:
        # Caller holds the ingestion lock
        window = self.config.dedup_window
        if window <= 0 or event.timestamp_source != TimestampSource.DEVICE:
            return False
        key = event.dedup_key
        if key in self._recent_keys:
            self._recent_keys.move_to_end(key)
            return True
        self._recent_keys[key] = None
        while len(self._recent_keys) > window:
            self._recent_keys.popitem(last=False)
        return False

    def _consume_realtime(self) -> None:
        channel = self.link.channel
        while not self._stopping.is_set():
            try:
                raw, address = channel.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.ingest(raw, address, source="push")
            except Exception as e:
                self.stats.increment("errors")
                app_logger.error(f"Error ingesting realtime record: {e}", exc_info=True)

    def _on_drop(self, count: int) -> None:
        self.stats.increment("dropped", count)

    # Control surface

    def pause(self) -> None:
        self.pool.pause()

    def resume(self) -> None:
        self.pool.resume()

    def clear_queue(self) -> int:
        dropped = self.queue.clear()
        self.pool.publish_status()
        return dropped

    def update_config(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Apply runtime settings. Raises ConfigError without applying anything."""
        with self._config_lock:
            applied = self.config.apply_updates(partial)

            if "queue_capacity" in applied:
                self.queue.resize(applied["queue_capacity"])
            if "history_capacity" in applied:
                self.history.resize(applied["history_capacity"])

            pool_settings = {
                attr: applied[key] for key, attr in _POOL_SETTINGS.items() if key in applied
            }
            if pool_settings:
                self.pool.configure(**pool_settings)

            link_settings = {
                attr: applied[key] for key, attr in _LINK_SETTINGS.items() if key in applied
            }
            if link_settings:
                self.link.configure(**link_settings)

            if "poll_interval" in applied:
                self.scheduler.reschedule_poll(applied["poll_interval"])

        app_logger.info(f"Runtime config updated: {applied}")
        self.pool.publish_status()
        return applied

    def reinitialize_link(self) -> Dict[str, Any]:
        self.link.reinitialize(reason="Reinitialize requested by operator")
        return self.link.status()

    def poll_now(self) -> Dict[str, Any]:
        return self.poller.poll()

    def get_diagnostics(self) -> Dict[str, Any]:
        return {
            "link_state": self.link.state.value,
            "queue_length": len(self.queue),
            "concurrent_deliveries": self.pool.in_flight,
            "stats": self.stats.snapshot(),
            "link": self.link.status(),
            "queue": self.pool.status(),
            "history_length": len(self.history),
            "subscribers": self.hub.subscriber_count,
            "poll": self.poller.status(),
            "running": self._running,
        }

    def get_history(self, limit: Optional[int] = None) -> List[AttendanceEvent]:
        return self.history.recent(limit)

    # Observers

    def subscribe(self) -> Subscription:
        return self.hub.subscribe()

    def unsubscribe(self, subscription) -> None:
        self.hub.unsubscribe(subscription)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "history": [event.to_dict() for event in self.history.recent()],
            "stats": self.stats.snapshot(),
            "link_state": self.link.state.value,
        }

    def publish_stats(self) -> None:
        self.hub.publish(STATS_SNAPSHOT, self.stats.snapshot())

import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from punch_relay.device import is_link_error
from punch_relay.exceptions import LinkUnavailableError
from punch_relay.models import AttendanceEvent, TimestampSource
from punch_relay.services.normalizer import FieldProfile, normalize
from punch_relay.services.stats_collector import StatsCollector
from punch_relay.shared.logger import app_logger


class PollProducer:
    """Pulls the device's stored records and admits the ones past the watermark.

    Overlapping cycles are skipped, never queued. The watermark only moves
    forward and only after a cycle that fetched successfully.
    """

    def __init__(
        self,
        link,
        ingest: Callable[[AttendanceEvent], Optional[AttendanceEvent]],
        stats: StatsCollector,
        profile: Optional[FieldProfile] = None,
        backfill: bool = False,
        start_time: Optional[datetime] = None,
    ):
        self.link = link
        self.ingest = ingest
        self.stats = stats
        self.profile = profile
        self._poll_lock = threading.Lock()
        self._watermark_lock = threading.Lock()
        self._watermark: Optional[datetime] = (
            None if backfill else (start_time or datetime.now()).replace(microsecond=0)
        )
        self.last_poll: Optional[Dict[str, Any]] = None

    @property
    def watermark(self) -> Optional[datetime]:
        with self._watermark_lock:
            return self._watermark

    @property
    def in_progress(self) -> bool:
        return self._poll_lock.locked()

    def poll(self) -> Dict[str, Any]:
        """Run one poll cycle and return a summary of what happened."""
        if not self._poll_lock.acquire(blocking=False):
            app_logger.info("[POLL] Poll in progress, skipping this cycle")
            return self._summary(skipped=True, reason="poll in progress")

        try:
            summary = self._poll_cycle()
        finally:
            self._poll_lock.release()
        self.last_poll = dict(summary, finished_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        return summary

    def _poll_cycle(self) -> Dict[str, Any]:
        self.stats.increment("polls")
        address = self.link.address

        try:
            records = self.link.fetch_bulk_records()
        except LinkUnavailableError as e:
            app_logger.info(f"[POLL] Skipping poll: {e}")
            return self._summary(skipped=True, reason=str(e))
        except Exception as e:
            self.stats.increment("errors")
            if is_link_error(e):
                app_logger.warning(f"[POLL] Link error while fetching records: {e}")
                self.link.request_reconnect(f"Poll failed: {e}")
            else:
                app_logger.error(f"[POLL] Error fetching records: {e}", exc_info=True)
            return self._summary(skipped=True, reason=f"fetch failed: {e}")

        watermark = self.watermark
        fresh = []
        for raw in records:
            event = normalize(raw, address, self.profile)
            if event.timestamp_source == TimestampSource.SERVER:
                self.stats.increment("malformed")
                app_logger.warning(
                    f"[POLL] Skipping record for subject {event.subject_id} without a device timestamp"
                )
                continue
            if watermark is None or event.occurred_at > watermark:
                fresh.append(event)

        fresh.sort(key=lambda event: event.occurred_at)

        admitted = 0
        duplicates = 0
        for event in fresh:
            if self.ingest(event) is None:
                duplicates += 1
            else:
                admitted += 1

        if fresh:
            self._advance(fresh[-1].occurred_at)

        if admitted:
            app_logger.info(
                f"[POLL] Admitted {admitted} new record(s) of {len(records)} fetched"
                f" (watermark {self._format(self.watermark)})"
            )
        else:
            app_logger.debug(f"[POLL] No new records among {len(records)} fetched")

        return self._summary(
            fetched=len(records), admitted=admitted, duplicates=duplicates
        )

    def status(self) -> Dict[str, Any]:
        return {
            "watermark": self._format(self.watermark),
            "in_progress": self.in_progress,
            "last_poll": self.last_poll,
        }

    def _advance(self, candidate: datetime) -> None:
        with self._watermark_lock:
            if self._watermark is None or candidate > self._watermark:
                self._watermark = candidate

    def _summary(self, skipped=False, reason=None, fetched=0, admitted=0, duplicates=0):
        return {
            "skipped": skipped,
            "reason": reason,
            "fetched": fetched,
            "admitted": admitted,
            "duplicates": duplicates,
            "watermark": self._format(self.watermark),
        }

    @staticmethod
    def _format(value: Optional[datetime]) -> Optional[str]:
        return value.strftime("%Y-%m-%d %H:%M:%S") if value else None

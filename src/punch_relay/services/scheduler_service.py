from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from punch_relay.shared.logger import app_logger

POLL_JOB_ID = "device_poll"
STATS_JOB_ID = "stats_snapshot"


class SchedulerService:
    """Runs the periodic poll and stats snapshot jobs"""

    def __init__(self, poll_func, stats_func, poll_interval: float = 60.0, stats_interval: float = 30.0):
        self.scheduler = None
        self.logger = app_logger
        self.is_running = False
        self.poll_func = poll_func
        self.stats_func = stats_func
        self.poll_interval = poll_interval
        self.stats_interval = stats_interval

    def start(self):
        """Start the scheduler"""
        if self.scheduler and self.is_running:
            self.logger.warning("[CRON] Scheduler is already running")
            return

        try:
            self.scheduler = BackgroundScheduler()

            self.scheduler.add_listener(self._job_executed_listener, EVENT_JOB_EXECUTED)
            self.scheduler.add_listener(self._job_error_listener, EVENT_JOB_ERROR)
            self.scheduler.add_listener(self._job_skipped_listener, EVENT_JOB_MAX_INSTANCES)

            self._add_poll_job()
            self._add_stats_job()

            self.scheduler.start()
            self.is_running = True

            self.logger.info("[CRON] Scheduler service started successfully")

        except Exception as e:
            self.logger.error(f"[CRON] Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler and self.is_running:
            try:
                self.scheduler.shutdown(wait=False)
                self.is_running = False
                self.logger.info("[CRON] Scheduler service stopped")
            except Exception as e:
                self.logger.error(f"[CRON] Error stopping scheduler: {e}")

    def reschedule_poll(self, interval: float):
        """Apply a new poll interval to the running job"""
        self.poll_interval = interval
        if self.scheduler and self.is_running:
            self.scheduler.reschedule_job(POLL_JOB_ID, trigger=IntervalTrigger(seconds=interval))
            self.logger.info(f"[CRON] Device poll rescheduled to every {interval} seconds")

    def _add_poll_job(self):
        try:
            self.scheduler.add_job(
                func=self._run_poll,
                trigger=IntervalTrigger(seconds=self.poll_interval),
                id=POLL_JOB_ID,
                name="Device Attendance Poll",
                replace_existing=True,
                max_instances=1,  # Prevent overlapping executions
                misfire_grace_time=max(1, int(self.poll_interval)),
                coalesce=True,
            )
            self.logger.info(f"[CRON] Device poll scheduled every {self.poll_interval} seconds")

        except Exception as e:
            self.logger.error(f"[CRON] Failed to add device poll job: {e}")
            raise

    def _add_stats_job(self):
        try:
            self.scheduler.add_job(
                func=self._run_stats_snapshot,
                trigger=IntervalTrigger(seconds=self.stats_interval),
                id=STATS_JOB_ID,
                name="Stats Snapshot",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        except Exception as e:
            self.logger.error(f"[CRON] Failed to add stats snapshot job: {e}")
            raise

    def _run_poll(self):
        try:
            summary = self.poll_func()
            if summary.get("admitted"):
                self.logger.info(
                    f"[CRON] Device Poll: admitted {summary['admitted']} record(s)"
                )
        except Exception as e:
            self.logger.error(f"[CRON] Device Poll error: {e}")

    def _run_stats_snapshot(self):
        try:
            self.stats_func()
        except Exception as e:
            self.logger.error(f"[CRON] Stats Snapshot error: {e}")

    def _job_executed_listener(self, event):
        self.logger.debug(f"[CRON] Job {event.job_id} executed")

    def _job_error_listener(self, event):
        self.logger.error(f"[CRON] Job {event.job_id} failed: {event.exception}")

    def _job_skipped_listener(self, event):
        self.logger.info(f"[CRON] Job {event.job_id} still running, skipped this run")

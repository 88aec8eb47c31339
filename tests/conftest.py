import threading
import time
from datetime import datetime

import pytest

from punch_relay.config import PipelineConfig
from punch_relay.device import DeviceDriver, DeviceHandle
from punch_relay.events import SubscriberHub
from punch_relay.models import AttendanceEvent, PunchType, VerificationMethod
from punch_relay.services.stats_collector import StatsCollector


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def make_event(subject_id="7", occurred_at=None, punch_type=PunchType.CHECK_IN, event_id=None):
    occurred_at = occurred_at or datetime(2024, 10, 15, 8, 30, 0)
    return AttendanceEvent(
        id=event_id or f"{occurred_at:%Y%m%d%H%M%S}-{subject_id}",
        subject_id=subject_id,
        occurred_at=occurred_at,
        verification_method=VerificationMethod.FINGERPRINT,
        punch_type=punch_type,
        source_address="10.0.0.5",
    )


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {"ok": True}

    @property
    def text(self):
        return self._body if isinstance(self._body, str) else str(self._body)

    def json(self):
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


class FakeSession:
    """Stands in for requests.Session: replays scripted responses or errors.

    Once the script runs out, ``default`` is returned for every call.
    """

    def __init__(self, script=None, default=None, delay=0.0):
        self.script = list(script or [])
        self.default = default or FakeResponse(200)
        self.delay = delay
        self.calls = []
        self.call_times = []
        self.closed = False
        self.active = 0
        self.peak_active = 0
        self._lock = threading.Lock()

    def post(self, url, json=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
            self.call_times.append(time.monotonic())
            outcome = self.script.pop(0) if self.script else self.default
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
        finally:
            with self._lock:
                self.active -= 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


class FakeDriver(DeviceDriver):
    """Scriptable device collaborator"""

    name = "fake"

    def __init__(self, records=None, users=None):
        self.records = list(records or [])
        self.users = dict(users or {"7": "Jane Doe"})
        self.connect_failures = 0
        self.connect_gate = None
        self.fetch_error = None
        self.fetch_gate = None
        self.fetch_started = threading.Event()
        self.connect_calls = 0
        self.fetch_calls = 0
        self.disconnects = 0
        self.handles = []
        self._callbacks = {}
        self._lock = threading.Lock()

    def connect(self, address, port, timeout):
        with self._lock:
            self.connect_calls += 1
            fail = self.connect_failures > 0
            if fail:
                self.connect_failures -= 1
        if self.connect_gate is not None:
            self.connect_gate.wait(5)
        if fail:
            raise ConnectionError("handshake timed out")
        handle = DeviceHandle(address=address, port=port, timeout=timeout, connection=object())
        with self._lock:
            self.handles.append(handle)
        return handle

    def register_realtime(self, handle, on_record, on_error):
        self._callbacks[id(handle)] = (on_record, on_error)

    def fetch_bulk_records(self, handle):
        with self._lock:
            self.fetch_calls += 1
        self.fetch_started.set()
        if self.fetch_gate is not None:
            self.fetch_gate.wait(5)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.records)

    def fetch_users(self, handle):
        return dict(self.users)

    def disconnect(self, handle):
        handle.closed.set()
        with self._lock:
            self.disconnects += 1

    # Test helpers

    @property
    def current_handle(self):
        return self.handles[-1] if self.handles else None

    def push(self, raw):
        on_record, _ = self._callbacks[id(self.current_handle)]
        on_record(raw)

    def fail(self, error):
        _, on_error = self._callbacks[id(self.current_handle)]
        on_error(error)


@pytest.fixture
def hub():
    return SubscriberHub(max_queue_size=50)


@pytest.fixture
def stats():
    return StatsCollector()


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def config():
    return PipelineConfig(
        device_ip="10.0.0.5",
        sink_url="http://sink.test/attendance",
        retry_base_delay=0.05,
        retry_max_delay=0.2,
        processing_delay=0.01,
        link_retry_base_delay=0.05,
        link_retry_max_delay=0.1,
        link_cooldown=0.2,
        poll_interval=3600,
        stats_interval=3600,
    )

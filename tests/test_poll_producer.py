import threading
from datetime import datetime

import pytest

from conftest import wait_for
from punch_relay.exceptions import LinkUnavailableError
from punch_relay.services.poll_producer import PollProducer

START = datetime(2024, 10, 15, 8, 0, 0)


class FakeLink:
    address = "10.0.0.5"

    def __init__(self, records=None):
        self.records = list(records or [])
        self.error = None
        self.gate = None
        self.fetch_started = threading.Event()
        self.fetch_calls = 0
        self.reconnect_reasons = []

    def fetch_bulk_records(self):
        self.fetch_calls += 1
        self.fetch_started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.records)

    def request_reconnect(self, reason):
        self.reconnect_reasons.append(reason)
        return True


def record(subject_id, when):
    return {"user_id": subject_id, "timestamp": when, "status": 1, "punch": 0}


@pytest.fixture
def admitted():
    return []


@pytest.fixture
def make_producer(admitted, stats):
    def factory(link, **kwargs):
        kwargs.setdefault("start_time", START)

        def ingest(event):
            admitted.append(event)
            return event

        ingest = kwargs.pop("ingest", ingest)
        return PollProducer(link, ingest, stats, **kwargs)

    return factory


def test_admits_only_records_past_watermark_in_order(make_producer, admitted):
    link = FakeLink(
        [
            record("1", "2024-10-15 07:59:00"),
            record("2", "2024-10-15 08:00:00"),
            record("3", "2024-10-15 08:05:00"),
            record("4", "2024-10-15 08:01:00"),
        ]
    )
    producer = make_producer(link)

    summary = producer.poll()

    assert [e.subject_id for e in admitted] == ["4", "3"]
    assert all(e.occurred_at > START for e in admitted)
    assert producer.watermark == datetime(2024, 10, 15, 8, 5)
    assert summary == {
        "skipped": False,
        "reason": None,
        "fetched": 4,
        "admitted": 2,
        "duplicates": 0,
        "watermark": "2024-10-15 08:05:00",
    }


def test_second_cycle_admits_nothing_new(make_producer, admitted):
    link = FakeLink([record("1", "2024-10-15 08:10:00")])
    producer = make_producer(link)

    producer.poll()
    summary = producer.poll()

    assert len(admitted) == 1
    assert summary["admitted"] == 0
    assert producer.watermark == datetime(2024, 10, 15, 8, 10)


def test_backfill_admits_everything_once(make_producer, admitted):
    link = FakeLink([record("1", "2020-01-01 08:00:00"), record("2", "2021-01-01 08:00:00")])
    producer = make_producer(link, backfill=True)
    assert producer.watermark is None

    producer.poll()
    producer.poll()

    assert [e.subject_id for e in admitted] == ["1", "2"]


def test_overlapping_poll_is_skipped(make_producer, admitted, stats):
    link = FakeLink([record("1", "2024-10-15 08:10:00")])
    link.gate = threading.Event()
    producer = make_producer(link)
    results = []

    first = threading.Thread(target=lambda: results.append(producer.poll()))
    first.start()
    assert link.fetch_started.wait(2)

    second = producer.poll()
    link.gate.set()
    first.join(timeout=3)

    assert second["skipped"] is True
    assert second["reason"] == "poll in progress"
    assert link.fetch_calls == 1
    assert stats.get("polls") == 1
    assert results[0]["admitted"] == 1
    assert len(admitted) == 1


def test_link_error_requests_reconnect_and_keeps_watermark(make_producer, admitted, stats):
    link = FakeLink([record("1", "2024-10-15 08:10:00")])
    link.error = TimeoutError("timed out")
    producer = make_producer(link)

    summary = producer.poll()

    assert summary["skipped"] is True
    assert len(link.reconnect_reasons) == 1
    assert producer.watermark == START
    assert admitted == []
    assert stats.get("errors") == 1


def test_other_errors_are_logged_without_reconnect(make_producer):
    link = FakeLink()
    link.error = ValueError("corrupt record table")
    producer = make_producer(link)

    summary = producer.poll()

    assert summary["skipped"] is True
    assert link.reconnect_reasons == []
    assert producer.watermark == START

    # Same records are retried next cycle
    link.error = None
    link.records = [record("1", "2024-10-15 08:10:00")]
    assert producer.poll()["admitted"] == 1


def test_disconnected_link_is_a_normal_skip(make_producer, stats):
    link = FakeLink()
    link.error = LinkUnavailableError("Device not connected")
    producer = make_producer(link)

    summary = producer.poll()

    assert summary["skipped"] is True
    assert summary["reason"] == "Device not connected"
    assert link.reconnect_reasons == []
    assert stats.get("errors") == 0


def test_records_without_device_time_are_skipped(make_producer, admitted, stats):
    link = FakeLink([record("1", None), record("2", "2024-10-15 08:10:00")])
    producer = make_producer(link)

    producer.poll()

    assert [e.subject_id for e in admitted] == ["2"]
    assert stats.get("malformed") == 1


def test_duplicates_are_counted_and_watermark_still_advances(make_producer):
    link = FakeLink([record("1", "2024-10-15 08:10:00"), record("2", "2024-10-15 08:20:00")])
    producer = make_producer(link, ingest=lambda event: None if event.subject_id == "2" else event)

    summary = producer.poll()

    assert summary["admitted"] == 1
    assert summary["duplicates"] == 1
    assert producer.watermark == datetime(2024, 10, 15, 8, 20)


def test_status_reports_last_poll(make_producer):
    producer = make_producer(FakeLink())
    assert producer.status()["last_poll"] is None

    producer.poll()

    assert wait_for(lambda: producer.status()["last_poll"] is not None)
    assert producer.status()["watermark"] == "2024-10-15 08:00:00"

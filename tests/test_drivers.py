import socket
import threading
import time

import pytest
from zk.exception import ZKNetworkError

from conftest import wait_for
from punch_relay.config import PipelineConfig
from punch_relay.device import (
    DeviceHandle,
    MockDriver,
    PyzkDriver,
    create_driver,
    is_link_error,
)
from punch_relay.exceptions import ConfigError
from punch_relay.services.normalizer import normalize


def test_create_driver_picks_configured_variant():
    assert isinstance(create_driver(PipelineConfig(device_driver="pyzk")), PyzkDriver)
    assert isinstance(create_driver(PipelineConfig(device_driver="mock")), MockDriver)
    with pytest.raises(ConfigError):
        create_driver(PipelineConfig(device_driver="reflection"))


def test_pyzk_driver_takes_password_and_transport():
    driver = create_driver(PipelineConfig(device_password=1234, device_force_udp=True))

    assert driver.password == 1234
    assert driver.force_udp is True


@pytest.mark.parametrize(
    "error",
    [
        TimeoutError("handshake"),
        socket.timeout("read"),
        ConnectionResetError("reset"),
        ZKNetworkError("can't reach device"),
        RuntimeError("Connection dropped by peer"),
        RuntimeError("request timed out"),
    ],
)
def test_link_errors(error):
    assert is_link_error(error)


def test_other_errors_are_not_link_errors():
    assert not is_link_error(ValueError("bad record table"))


def test_mock_driver_produces_normalizable_punches():
    driver = MockDriver(interval=0.01, subjects=3)
    handle = driver.connect("127.0.0.1", 4370, 1)
    received = []

    driver.register_realtime(handle, received.append, lambda error: None)
    assert wait_for(lambda: len(received) >= 2)
    driver.disconnect(handle)

    event = normalize(received[0], handle.address)
    assert event.subject_id in {"1", "2", "3"}
    assert event.timestamp_source == "device"
    assert len(driver.fetch_bulk_records(handle)) >= 2
    assert driver.fetch_users(handle)["1"] == "Mock User 1"


class FakeConnection:
    """Stands in for a pyzk ZK connection with a scripted live_capture.

    ``script`` items are yielded in order (exceptions are raised). With
    ``hold_open`` the generator then idles like a quiet terminal until
    ``end_live_capture`` is set.
    """

    def __init__(self, script=(), hold_open=False):
        self.script = list(script)
        self.hold_open = hold_open
        self.end_live_capture = False
        self.enabled = False
        self.disconnected = False
        self.users = 12
        self.records = 480

    def enable_device(self):
        self.enabled = True

    def live_capture(self, new_timeout=10):
        for item in self.script:
            if isinstance(item, Exception):
                raise item
            yield item
        while self.hold_open and not self.end_live_capture:
            time.sleep(0.01)
            yield None

    def disconnect(self):
        self.disconnected = True

    def read_sizes(self):
        return True

    def get_serialnumber(self):
        return "CKJ1234"

    def get_device_name(self):
        return "F22/ID"

    def get_firmware_version(self):
        return "Ver 6.60"


def start_reader(connection):
    driver = PyzkDriver()
    handle = DeviceHandle(address="10.0.0.5", port=4370, timeout=1, connection=connection)
    records, errors = [], []
    lock = threading.Lock()

    def on_error(error):
        with lock:
            errors.append(error)

    driver.register_realtime(handle, records.append, on_error)
    return driver, handle, records, errors


def test_pyzk_reader_reports_end_of_capture_once():
    connection = FakeConnection(script=[{"user_id": "1"}, None, {"user_id": "2"}])

    driver, handle, records, errors = start_reader(connection)
    handle.reader.join(timeout=2)

    assert connection.enabled
    assert records == [{"user_id": "1"}, {"user_id": "2"}]
    assert len(errors) == 1
    assert isinstance(errors[0], ConnectionError)


def test_pyzk_reader_reports_capture_error_once():
    failure = ZKNetworkError("can't reach device")
    connection = FakeConnection(script=[{"user_id": "1"}, failure])

    driver, handle, records, errors = start_reader(connection)
    handle.reader.join(timeout=2)

    assert records == [{"user_id": "1"}]
    assert errors == [failure]


def test_pyzk_reader_is_silent_after_disconnect():
    connection = FakeConnection(hold_open=True)

    driver, handle, records, errors = start_reader(connection)
    assert handle.reader.is_alive()
    driver.disconnect(handle)

    assert not handle.reader.is_alive()
    assert connection.end_live_capture is True
    assert connection.disconnected
    assert errors == []


def test_pyzk_device_info():
    driver = PyzkDriver()
    handle = DeviceHandle(address="10.0.0.5", port=4370, timeout=1, connection=FakeConnection())

    info = driver.fetch_device_info(handle)

    assert info == {
        "serial_number": "CKJ1234",
        "device_name": "F22/ID",
        "firmware_version": "Ver 6.60",
        "user_count": 12,
        "record_count": 480,
    }


def test_mock_driver_device_info():
    driver = MockDriver(subjects=4)
    handle = driver.connect("127.0.0.1", 4370, 1)

    assert driver.fetch_device_info(handle)["user_count"] == 4

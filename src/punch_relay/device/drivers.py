"""Device collaborators: the capability interface and its firmware variants.

A driver is picked by name at configuration time. The link manager only
talks to the ``DeviceDriver`` interface and never inspects the underlying
library objects.
"""

import random
import socket
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from zk import ZK
from zk.exception import ZKErrorConnection, ZKNetworkError

from punch_relay.exceptions import ConfigError
from punch_relay.shared.logger import app_logger

RecordCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]

LINK_ERRORS = (
    TimeoutError,
    socket.timeout,
    ConnectionError,
    OSError,
    ZKNetworkError,
    ZKErrorConnection,
)


def is_link_error(error: BaseException) -> bool:
    """Timeout and connection shaped errors that call for a reconnect"""
    if isinstance(error, LINK_ERRORS):
        return True
    message = str(error).lower()
    return "timed out" in message or "timeout" in message or "connection" in message


@dataclass
class DeviceHandle:
    """An open link to one terminal"""

    address: str
    port: int
    timeout: float
    connection: Any = None
    closed: threading.Event = field(default_factory=threading.Event)
    reader: Optional[threading.Thread] = None
    info: Dict[str, Any] = field(default_factory=dict)
    # Realtime failure reported before the link manager adopted the handle
    failure: Optional[str] = None


class DeviceDriver(ABC):
    """Capability interface every device variant implements"""

    name = "abstract"

    @abstractmethod
    def connect(self, address: str, port: int, timeout: float) -> DeviceHandle:
        """Open a link; raise on failure."""

    @abstractmethod
    def register_realtime(
        self, handle: DeviceHandle, on_record: RecordCallback, on_error: ErrorCallback
    ) -> None:
        """Start delivering realtime punches to ``on_record``.

        Must return once registration succeeded. Errors after that point are
        reported through ``on_error`` exactly once per handle.
        """

    @abstractmethod
    def fetch_bulk_records(self, handle: DeviceHandle) -> List[Any]:
        """Return every attendance record stored on the device."""

    @abstractmethod
    def fetch_users(self, handle: DeviceHandle) -> Dict[str, str]:
        """Return subject id -> display name for users enrolled on the device."""

    def fetch_device_info(self, handle: DeviceHandle) -> Dict[str, Any]:
        """Serial number, firmware and storage counts, where the variant knows them."""
        return {}

    @abstractmethod
    def disconnect(self, handle: DeviceHandle) -> None:
        """Release the link. Must not raise."""


class PyzkDriver(DeviceDriver):
    """ZKTeco terminals over the pyzk library (TCP, or UDP when forced)"""

    name = "pyzk"

    def __init__(self, password: int = 0, force_udp: bool = False, live_timeout: int = 1):
        self.password = password
        self.force_udp = force_udp
        self.live_timeout = live_timeout

    def _open(self, address: str, port: int, timeout: float):
        zk = ZK(
            address,
            port=port,
            timeout=max(1, int(timeout)),
            password=self.password,
            force_udp=self.force_udp,
            ommit_ping=False,
        )
        return zk.connect()

    def connect(self, address: str, port: int, timeout: float) -> DeviceHandle:
        app_logger.info(f"[LINK] Connecting to device {address}:{port} (timeout {timeout}s)")
        conn = self._open(address, port, timeout)
        app_logger.info(f"[LINK] Connected to device {address}:{port}")
        return DeviceHandle(address=address, port=port, timeout=timeout, connection=conn)

    def register_realtime(self, handle, on_record, on_error) -> None:
        conn = handle.connection
        conn.enable_device()

        def reader():
            try:
                for attendance in conn.live_capture(new_timeout=self.live_timeout):
                    if handle.closed.is_set():
                        break
                    if attendance is None:
                        continue
                    on_record(attendance)
            except Exception as e:
                if not handle.closed.is_set():
                    on_error(e)
                return
            if not handle.closed.is_set():
                on_error(ConnectionError("Live capture stopped unexpectedly"))

        handle.reader = threading.Thread(
            target=reader, daemon=True, name=f"LiveCapture-{handle.address}"
        )
        handle.reader.start()

    def fetch_bulk_records(self, handle: DeviceHandle) -> List[Any]:
        # The live socket is busy with realtime capture; read on a second session
        conn = self._open(handle.address, handle.port, handle.timeout)
        try:
            return list(conn.get_attendance() or [])
        finally:
            try:
                conn.disconnect()
            except Exception as e:
                app_logger.debug(f"[POLL] Error closing bulk read session: {e}")

    def fetch_users(self, handle: DeviceHandle) -> Dict[str, str]:
        users = handle.connection.get_users() or []
        return {str(user.user_id): user.name for user in users if user.user_id}

    def fetch_device_info(self, handle: DeviceHandle) -> Dict[str, Any]:
        conn = handle.connection
        conn.read_sizes()
        return {
            "serial_number": conn.get_serialnumber(),
            "device_name": conn.get_device_name(),
            "firmware_version": conn.get_firmware_version(),
            "user_count": conn.users,
            "record_count": conn.records,
        }

    def disconnect(self, handle: DeviceHandle) -> None:
        handle.closed.set()
        conn = handle.connection
        if conn is None:
            return
        conn.end_live_capture = True
        if handle.reader and handle.reader is not threading.current_thread():
            # Socket timeout is live_timeout, so the reader notices quickly
            handle.reader.join(timeout=self.live_timeout + 2)
        try:
            conn.disconnect()
            app_logger.info(f"[LINK] Device {handle.address} disconnected gracefully")
        except Exception as e:
            app_logger.debug(f"[LINK] Error disconnecting device {handle.address}: {e}")


class MockDriver(DeviceDriver):
    """Synthetic terminal for running the relay without hardware"""

    name = "mock"

    def __init__(self, interval: float = 5.0, subjects: int = 5):
        self.interval = interval
        self.subjects = subjects
        self._records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def connect(self, address: str, port: int, timeout: float) -> DeviceHandle:
        app_logger.info(f"[LINK] Mock device connected at {address}:{port}")
        return DeviceHandle(address=address, port=port, timeout=timeout, connection=self)

    def register_realtime(self, handle, on_record, on_error) -> None:
        def generator():
            while not handle.closed.wait(self.interval):
                record = {
                    "user_id": str(random.randint(1, self.subjects)),
                    "timestamp": datetime.now().replace(microsecond=0),
                    "status": random.choice([1, 3, 2]),
                    "punch": random.choice([0, 1]),
                }
                with self._lock:
                    self._records.append(record)
                on_record(record)

        handle.reader = threading.Thread(
            target=generator, daemon=True, name=f"MockCapture-{handle.address}"
        )
        handle.reader.start()

    def fetch_bulk_records(self, handle: DeviceHandle) -> List[Any]:
        with self._lock:
            return list(self._records)

    def fetch_users(self, handle: DeviceHandle) -> Dict[str, str]:
        return {str(i): f"Mock User {i}" for i in range(1, self.subjects + 1)}

    def fetch_device_info(self, handle: DeviceHandle) -> Dict[str, Any]:
        with self._lock:
            records = len(self._records)
        return {
            "serial_number": "MOCK-0001",
            "device_name": "Mock Terminal",
            "firmware_version": None,
            "user_count": self.subjects,
            "record_count": records,
        }

    def disconnect(self, handle: DeviceHandle) -> None:
        handle.closed.set()


DRIVERS = {
    PyzkDriver.name: PyzkDriver,
    MockDriver.name: MockDriver,
}


def create_driver(config) -> DeviceDriver:
    """Instantiate the driver variant named by ``config.device_driver``."""
    name = config.device_driver
    if name == PyzkDriver.name:
        return PyzkDriver(password=config.device_password, force_udp=config.device_force_udp)
    if name == MockDriver.name:
        return MockDriver()
    raise ConfigError(
        f"Unknown device driver '{name}'. Available: {', '.join(sorted(DRIVERS))}"
    )

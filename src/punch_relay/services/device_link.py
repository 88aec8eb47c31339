import queue
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from punch_relay.device import DeviceDriver, DeviceHandle
from punch_relay.events import LINK_STATE_CHANGED, SubscriberHub
from punch_relay.exceptions import LinkUnavailableError
from punch_relay.models import LinkState, can_transition
from punch_relay.services.stats_collector import StatsCollector
from punch_relay.services.subject_directory import SubjectDirectory
from punch_relay.shared.logger import app_logger

TUNABLES = ("retry_base_delay", "retry_max_delay", "max_retries", "cooldown")


class DeviceLinkManager:
    """Owns the device connection and keeps it alive.

    States move Disconnected -> Connecting -> Connected -> Reconnecting ->
    Connecting ... and the manager retries forever. Reconnect requests are
    single-flighted: while a reconnect sequence runs, further triggers are
    ignored. Realtime punches are pushed into ``channel`` as
    ``(raw_record, address)`` tuples for the ingestion thread.

    Each start gets a new generation number. Threads of an older generation
    (for example one stuck in a handshake when the link was reinitialized)
    may not change state and release whatever they opened on return.
    """

    def __init__(
        self,
        driver: DeviceDriver,
        address: str,
        port: int,
        hub: SubscriberHub,
        stats: StatsCollector,
        timeout: float = 10.0,
        directory: Optional[SubjectDirectory] = None,
        channel_size: int = 1000,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 30.0,
        max_retries: int = 5,
        cooldown: float = 60.0,
    ):
        self.driver = driver
        self.address = address
        self.port = port
        self.timeout = timeout
        self.hub = hub
        self.stats = stats
        self.directory = directory or SubjectDirectory()
        self.channel: "queue.Queue[Tuple[Any, str]]" = queue.Queue(maxsize=channel_size)

        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_retries = max_retries
        self.cooldown = cooldown

        self._cond = threading.Condition()
        self._state = LinkState.DISCONNECTED
        self._reason = "Not started"
        self._generation = 0
        self._thread: Optional[threading.Thread] = None
        self._handle: Optional[DeviceHandle] = None
        self._failure_reason: Optional[str] = None
        self._attempt = 0
        self._connected_since: Optional[datetime] = None
        self.transitions: List[Tuple[LinkState, LinkState, str]] = []

    # Lifecycle

    def start(self) -> None:
        with self._cond:
            if self._thread and self._thread.is_alive():
                app_logger.warning("[LINK] Link manager is already running")
                return
            self._generation += 1
            generation = self._generation
            self._thread = threading.Thread(
                target=self._run,
                args=(generation,),
                daemon=True,
                name=f"DeviceLink-{generation}",
            )
            thread = self._thread
        thread.start()

    def stop(self, reason: str = "Link stopped", wait_timeout: float = 3.0) -> None:
        with self._cond:
            self._generation += 1
            thread, self._thread = self._thread, None
            handle, self._handle = self._handle, None
            self._failure_reason = None
            self._connected_since = None
            previous = self._state
            changed = self._apply_state(LinkState.DISCONNECTED, reason)
            self._cond.notify_all()

        if changed:
            self._announce(previous, LinkState.DISCONNECTED, reason)
        if handle:
            self.driver.disconnect(handle)
        if thread and thread.is_alive() and thread is not threading.current_thread():
            # A thread blocked in a handshake cannot be interrupted; it
            # notices the new generation and cleans up when it returns
            thread.join(timeout=wait_timeout)

    def reinitialize(self, reason: str = "Reinitialize requested") -> None:
        app_logger.info(f"[LINK] Reinitializing device link: {reason}")
        self.stop(reason=reason, wait_timeout=0.5)
        self.start()

    def request_reconnect(self, reason: str) -> bool:
        """Ask for a reconnect. Returns False if one is already underway."""
        with self._cond:
            if self._state != LinkState.CONNECTED or self._failure_reason is not None:
                app_logger.debug(
                    f"[LINK] Reconnect request ignored ({self._state.value}): {reason}"
                )
                return False
            self._failure_reason = reason
            self._cond.notify_all()
        app_logger.warning(f"[LINK] Reconnect requested: {reason}")
        return True

    def configure(self, **settings) -> None:
        with self._cond:
            for key, value in settings.items():
                if key not in TUNABLES:
                    raise AttributeError(f"Unknown link setting: {key}")
                setattr(self, key, value)

    # Queries

    @property
    def state(self) -> LinkState:
        with self._cond:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == LinkState.CONNECTED

    def fetch_bulk_records(self) -> List[Any]:
        with self._cond:
            handle = self._handle
            connected = self._state == LinkState.CONNECTED
        if not connected or handle is None:
            raise LinkUnavailableError("Device not connected")
        return self.driver.fetch_bulk_records(handle)

    def backoff_delay(self, attempt: int) -> Tuple[float, bool]:
        """Delay before connection attempt ``attempt + 1``.

        Linear and capped for the first ``max_retries`` failures, then one
        long cooldown. The second value tells whether the cooldown applies.
        """
        if attempt > self.max_retries:
            return self.cooldown, True
        return min(self.retry_base_delay * attempt, self.retry_max_delay), False

    def status(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "state": self._state.value,
                "reason": self._reason,
                "address": self.address,
                "port": self.port,
                "attempt": self._attempt,
                "connected_since": (
                    self._connected_since.strftime("%Y-%m-%d %H:%M:%S")
                    if self._connected_since
                    else None
                ),
                "realtime_backlog": self.channel.qsize(),
                "device": dict(self._handle.info) if self._handle else None,
                "driver": self.driver.name,
            }

    # Link thread

    def _run(self, generation: int) -> None:
        attempt = 0
        self._set_state(generation, LinkState.CONNECTING, "Link starting")

        while self._is_current(generation):
            try:
                handle = self._handshake()
            except Exception as e:
                if not self._is_current(generation):
                    break
                attempt += 1
                self.stats.increment("errors")
                reason = f"Handshake with {self.address}:{self.port} failed: {e}"
                app_logger.warning(f"[LINK] {reason}")
            else:
                adopted, failure = self._adopt(generation, handle)
                if not adopted:
                    self.driver.disconnect(handle)
                    if failure is None:
                        break
                    # Live capture died before the link was up
                    attempt += 1
                    self.stats.increment("errors")
                    reason = failure
                    app_logger.warning(f"[LINK] {reason}")
                else:
                    attempt = 0
                    self._set_state(
                        generation,
                        LinkState.CONNECTED,
                        f"Connected to {self.address}:{self.port}",
                    )
                    reason = self._wait_for_failure(generation)
                    self._release(handle)
                    if reason is None:
                        break
                    attempt = 1

            if not self._set_state(generation, LinkState.RECONNECTING, reason):
                break
            self.stats.increment("reconnects")

            delay, cooling_down = self.backoff_delay(attempt)
            with self._cond:
                self._attempt = attempt
            if cooling_down:
                app_logger.warning(
                    f"[LINK] {attempt} consecutive failures, cooling down for {delay:.0f}s"
                )
                attempt = 0
            else:
                app_logger.info(f"[LINK] Reconnecting in {delay:.1f}s (attempt {attempt})")

            if not self._sleep(generation, delay):
                break
            self._set_state(
                generation, LinkState.CONNECTING, f"Connecting to {self.address}:{self.port}"
            )

        app_logger.info(f"[LINK] Link thread {generation} finished")

    def _handshake(self) -> DeviceHandle:
        handle = self.driver.connect(self.address, self.port, self.timeout)
        try:
            users = self.driver.fetch_users(handle)
            self.directory.replace(users)
            app_logger.info(f"[LINK] Loaded {len(users)} user name(s) from device")
            handle.info = self._read_device_info(handle)
            self.driver.register_realtime(
                handle,
                on_record=lambda raw: self._offer(handle, raw),
                on_error=lambda error: self._on_realtime_error(handle, error),
            )
        except Exception:
            self.driver.disconnect(handle)
            raise
        return handle

    def _read_device_info(self, handle: DeviceHandle) -> Dict[str, Any]:
        try:
            return self.driver.fetch_device_info(handle)
        except Exception as e:
            app_logger.warning(f"[LINK] Could not read device info: {e}")
            return {}

    def _adopt(self, generation: int, handle: DeviceHandle) -> Tuple[bool, Optional[str]]:
        """Make ``handle`` the live one. Returns (adopted, pending failure)."""
        with self._cond:
            if generation != self._generation:
                return False, None
            if handle.failure is not None:
                return False, handle.failure
            self._handle = handle
            self._failure_reason = None
            self._connected_since = datetime.now()
            return True, None

    def _release(self, handle: DeviceHandle) -> None:
        with self._cond:
            owned = self._handle is handle
            if owned:
                self._handle = None
                self._connected_since = None
        if owned:
            self.driver.disconnect(handle)

    def _wait_for_failure(self, generation: int) -> Optional[str]:
        with self._cond:
            while generation == self._generation and self._failure_reason is None:
                self._cond.wait(timeout=1.0)
            if generation != self._generation:
                return None
            return self._failure_reason

    def _sleep(self, generation: int, delay: float) -> bool:
        deadline = time.monotonic() + delay
        with self._cond:
            while generation == self._generation:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return True
                self._cond.wait(timeout=remaining)
            return False

    def _is_current(self, generation: int) -> bool:
        with self._cond:
            return generation == self._generation

    # Realtime callbacks (reader thread)

    def _offer(self, handle: DeviceHandle, raw: Any) -> None:
        warned = False
        while not handle.closed.is_set():
            try:
                self.channel.put((raw, handle.address), timeout=1.0)
                return
            except queue.Full:
                if not warned:
                    app_logger.warning(
                        "[LINK] Realtime channel is full, holding device reader"
                    )
                    warned = True

    def _on_realtime_error(self, handle: DeviceHandle, error: BaseException) -> None:
        reason = f"Realtime capture error: {error}"
        with self._cond:
            if handle.closed.is_set():
                return
            if self._handle is not handle:
                # Not adopted yet; _adopt picks this up
                if handle.failure is None:
                    handle.failure = reason
                return
            if self._failure_reason is not None:
                return
            self._failure_reason = reason
            self._cond.notify_all()
        self.stats.increment("errors")
        app_logger.warning(f"[LINK] Reconnect requested: {reason}")

    # State

    def _set_state(self, generation: int, target: LinkState, reason: str) -> bool:
        with self._cond:
            if generation != self._generation:
                return False
            previous = self._state
            if not self._apply_state(target, reason):
                return False
        self._announce(previous, target, reason)
        return True

    def _apply_state(self, target: LinkState, reason: str) -> bool:
        # Caller holds the lock
        previous = self._state
        if previous == target:
            return False
        if not can_transition(previous, target):
            app_logger.error(
                f"[LINK] Refusing transition {previous.value} -> {target.value}"
            )
            return False
        self._state = target
        self._reason = reason
        self.transitions.append((previous, target, reason))
        return True

    def _announce(self, previous: LinkState, target: LinkState, reason: str) -> None:
        app_logger.info(f"[LINK] {previous.value} -> {target.value}: {reason}")
        self.hub.publish(
            LINK_STATE_CHANGED,
            {
                "state": target.value,
                "previous": previous.value,
                "reason": reason,
                "address": self.address,
            },
        )

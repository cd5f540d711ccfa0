"""Connection management for the orientation cube.

The manager owns the link lifecycle: it scans for the cube, connects to it,
subscribes to its orientation and battery characteristics, and keeps the link
alive for days by reconnecting under a tiered backoff. Radio work is delegated
to a radio object (see ``bluez_radio.BlueZRadio``) whose commands never block
and whose results come back through the ``on_*`` callbacks below.

Events for the rest of the application are published on an
``cube_events.EventChannel``.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable

from cube_events import (
    BatteryLevelChanged,
    DeviceConnected,
    DeviceDisconnected,
    DevicesDiscovered,
    DiscoveredDevice,
    EventChannel,
    OrientationChanged,
)
from errors import ConnectFailed, LinkUnavailable
from settings import CUBE_DEVICE_NAME, DISCOVERY_WINDOW_SECONDS, SCAN_WINDOW_SECONDS

logger = logging.getLogger(__name__)

ORIENTATION_CHARACTERISTIC_UUID = "c7e70012-c847-11e6-8175-8c89a55d403c"
BATTERY_LEVEL_CHARACTERISTIC_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

# (attempts below this count, interval in seconds)
BACKOFF_TIERS = (
    (12, 5.0),
    (36, 30.0),
    (84, 120.0),
    (108, 300.0),
)
MAX_RECONNECT_INTERVAL = 900.0

# Past this many attempts a passive scan stays up between attempts
BACKGROUND_SCAN_THRESHOLD = 108

SCAN_RECONNECT = "reconnect"
SCAN_BACKGROUND = "background"
SCAN_DISCOVERY = "discovery"


class LinkState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AWAITING_RECONNECT = "awaiting_reconnect"
    BACKGROUND_SCANNING = "background_scanning"


class AdapterState(str, Enum):
    POWERED_ON = "powered_on"
    POWERED_OFF = "powered_off"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"


def reconnect_interval(attempts: int) -> float:
    """Return the backoff interval for the number of attempts since the last success."""
    for limit, interval in BACKOFF_TIERS:
        if attempts < limit:
            return interval
    return MAX_RECONNECT_INTERVAL


def decode_orientation(payload: bytes) -> int:
    """The first byte of an orientation payload is the face; 0 means no face up."""
    if not payload:
        return 0
    return payload[0]


def _normalize_uuid(uuid: str) -> str:
    return str(uuid).lower()


class ConnectionManager:
    """Keeps a link to a single cube alive and publishes its events."""

    def __init__(
        self,
        radio,
        channel: EventChannel,
        scheduler,
        clock: Callable[[], float] = time.time,
        device_name: str = CUBE_DEVICE_NAME,
        scan_window: float = SCAN_WINDOW_SECONDS,
        discovery_window: float = DISCOVERY_WINDOW_SECONDS,
    ):
        self._radio = radio
        self._channel = channel
        self._scheduler = scheduler
        self._clock = clock
        self._device_name = device_name
        self._scan_window = scan_window
        self._discovery_window = discovery_window

        self._lock = threading.RLock()
        self._state = LinkState.IDLE
        self._adapter_state: AdapterState | None = None
        self._suspended = False
        self._device_id: str | None = None
        self._reconnect_attempts = 0
        self._last_disconnection_time: float | None = None
        self._background_scanning = False
        self._reconnect_timer = None
        self._scan_window_timer = None

        self._scan_reasons: set[str] = set()
        self._scan_mode: str | None = None

        self._discovered: dict[str, DiscoveredDevice] | None = None
        self._discovery_timer = None
        self._discovery_callbacks: list[Callable[[tuple[DiscoveredDevice, ...]], None]] = []

        self._last_face: int | None = None
        self._battery_level: int | None = None

        radio.set_listener(self)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def device_id(self) -> str | None:
        return self._device_id

    @property
    def is_background_scanning(self) -> bool:
        return self._background_scanning

    def is_connected(self) -> bool:
        return self._state is LinkState.CONNECTED

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "state": self._state.value,
                "adapter": self._adapter_state.value if self._adapter_state else None,
                "device_id": self._device_id,
                "reconnect_attempts": self._reconnect_attempts,
                "next_interval": reconnect_interval(self._reconnect_attempts),
                "background_scanning": self._background_scanning,
                "last_disconnection_time": self._last_disconnection_time,
                "battery_level": self._battery_level,
                "discovering": self._discovered is not None,
            }

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def remember_device(self, device_id: str | None) -> None:
        """Seed the bonded device, e.g. from a previous run."""
        with self._lock:
            self._device_id = device_id

    def connect_to_device(self, device_id: str) -> None:
        """Connect to a device picked by the user after discovery."""
        with self._lock:
            self._require_adapter()
            if device_id == self._device_id and self._state in (
                LinkState.CONNECTED,
                LinkState.CONNECTING,
            ):
                return
            previous = self._device_id
            was_connected = self._state is LinkState.CONNECTED
            self._reset_reconnection_state()
            if previous and previous != device_id and was_connected:
                logger.info("Switching from %s to %s", previous, device_id)
                self._radio.disconnect(previous)
                self._publish_disconnected(previous)
            self._device_id = device_id
            self._connect_known_device()

    def forget_device(self) -> None:
        """Disconnect and forget the cube; a new discovery is needed afterwards."""
        with self._lock:
            previous = self._device_id
            was_connected = self._state is LinkState.CONNECTED
            self._reset_reconnection_state()
            self._device_id = None
            self._last_face = None
            self._battery_level = None
            self._set_state(LinkState.IDLE)
            if previous is None:
                return
            logger.info("Forgetting device %s", previous)
            if was_connected:
                self._radio.disconnect(previous)
                self._publish_disconnected(previous)
            self._radio.forget(previous)

    def attempt_reconnection(self) -> None:
        """Try to reconnect right away instead of waiting for the backoff timer."""
        with self._lock:
            if not self._adapter_ready():
                return
            if self._state in (LinkState.CONNECTED, LinkState.CONNECTING, LinkState.SCANNING):
                return
            self._cancel_reconnect_timer()
            self._attempt_connection_or_scan()

    def suspend(self) -> None:
        """Drop the link and stop all radio activity, e.g. before system sleep."""
        with self._lock:
            if self._suspended:
                return
            logger.info("Suspending connection manager")
            self._suspended = True
            was_connected = self._state is LinkState.CONNECTED
            self._reset_reconnection_state()
            self._set_state(LinkState.IDLE)
            if was_connected and self._device_id:
                self._radio.disconnect(self._device_id)
                self._publish_disconnected(self._device_id)

    def resume(self) -> None:
        """Resume after :meth:`suspend`; reconnects from a fresh backoff."""
        with self._lock:
            if not self._suspended:
                return
            logger.info("Resuming connection manager")
            self._suspended = False
            self._reconnect_attempts = 0
            self.attempt_reconnection()

    def discover_devices(
        self,
        on_complete: Callable[[tuple[DiscoveredDevice, ...]], None] | None = None,
        window: float | None = None,
    ) -> None:
        """
        Collect cubes in range for a bounded window.

        Results are deduplicated by device id, passed to ``on_complete`` and
        published as a DevicesDiscovered event. A request made while a
        discovery is running joins it.

        Raises:
            LinkUnavailable: if the adapter cannot scan.
        """
        with self._lock:
            self._require_adapter()
            if on_complete is not None:
                self._discovery_callbacks.append(on_complete)
            if self._discovered is not None:
                logger.debug("Discovery already running; joining it")
                return
            duration = self._discovery_window if window is None else window
            logger.info("Starting device discovery for %.0fs", duration)
            self._discovered = {}
            self._request_scan(SCAN_DISCOVERY)
            self._discovery_timer = self._scheduler.call_later(duration, self._finish_discovery)

    def shutdown(self) -> None:
        with self._lock:
            logger.info("Shutting down connection manager")
            was_connected = self._state is LinkState.CONNECTED
            self._reset_reconnection_state()
            if self._discovery_timer is not None:
                self._discovery_timer.cancel()
                self._discovery_timer = None
            self._discovered = None
            self._discovery_callbacks.clear()
            self._scan_reasons.clear()
            self._sync_scan()
            self._set_state(LinkState.IDLE)
            if was_connected and self._device_id:
                self._radio.disconnect(self._device_id)

    # ------------------------------------------------------------------
    # Radio callbacks
    # ------------------------------------------------------------------

    def on_adapter_state(self, adapter_state: AdapterState) -> None:
        with self._lock:
            previous = self._adapter_state
            self._adapter_state = adapter_state
            if adapter_state is AdapterState.POWERED_ON:
                if previous is AdapterState.POWERED_ON:
                    return
                logger.info("Bluetooth powered on")
                self._reconnect_attempts = 0
                if not self._suspended and self._state is LinkState.IDLE:
                    self._attempt_connection_or_scan()
                return

            logger.warning("Bluetooth unavailable (%s); halting scans and reconnects", adapter_state.value)
            was_connected = self._state is LinkState.CONNECTED
            self._reset_reconnection_state()
            # The radio cannot scan anymore; forget outstanding scan requests
            self._scan_reasons.clear()
            self._scan_mode = None
            self._set_state(LinkState.IDLE)
            if was_connected:
                self._publish_disconnected(self._device_id)

    def on_device_discovered(self, device_id: str, name: str | None, rssi: int | None = None) -> None:
        if name != self._device_name:
            return
        with self._lock:
            if self._discovered is not None and device_id not in self._discovered:
                logger.info("Discovered %s (%s, rssi=%s)", name, device_id, rssi)
                self._discovered[device_id] = DiscoveredDevice(device_id, name, rssi)

            if self._state is LinkState.SCANNING:
                logger.info("Found device %s while scanning; connecting", device_id)
                self._cancel_scan_window_timer()
                self._release_scan(SCAN_RECONNECT)
                self._device_id = device_id
                self._connect_known_device()
            elif (
                self._background_scanning
                and device_id == self._device_id
                and self._state in (LinkState.AWAITING_RECONNECT, LinkState.BACKGROUND_SCANNING)
            ):
                logger.info("Background scan saw %s; reconnecting early", device_id)
                self._cancel_reconnect_timer()
                self._connect_known_device()

    def on_connected(self, device_id: str) -> None:
        with self._lock:
            if device_id != self._device_id:
                logger.warning("Dropping connection from unexpected device %s", device_id)
                self._radio.disconnect(device_id)
                return
            if self._state is LinkState.CONNECTED:
                return
            if self._suspended or not self._adapter_ready():
                logger.info("Connected to %s while suspended; disconnecting", device_id)
                self._radio.disconnect(device_id)
                return
            logger.info(
                "Connected to device %s after %d attempts", device_id, self._reconnect_attempts
            )
            self._reset_reconnection_state()
            self._last_face = None
            self._set_state(LinkState.CONNECTED)
            self._channel.publish(DeviceConnected(device_id))
            self._radio.subscribe(
                device_id,
                (ORIENTATION_CHARACTERISTIC_UUID, BATTERY_LEVEL_CHARACTERISTIC_UUID),
            )

    def on_connect_failed(self, device_id: str, error: ConnectFailed | str | None = None) -> None:
        with self._lock:
            if device_id != self._device_id or self._state is not LinkState.CONNECTING:
                return
            logger.warning("Failed to connect to %s: %s", device_id, error or "unknown error")
            self._schedule_reconnect()

    def on_disconnected(self, device_id: str, error: str | None = None) -> None:
        with self._lock:
            if device_id != self._device_id or self._state is not LinkState.CONNECTED:
                return
            if error:
                logger.warning("Disconnected from %s with error: %s", device_id, error)
            else:
                logger.info("Disconnected from %s", device_id)
            self._publish_disconnected(device_id)
            if self._adapter_ready():
                self._schedule_reconnect()
            else:
                self._set_state(LinkState.IDLE)

    def on_characteristic_value(self, device_id: str, uuid: str, payload: bytes) -> None:
        uuid = _normalize_uuid(uuid)
        with self._lock:
            if device_id != self._device_id:
                return
            if uuid == ORIENTATION_CHARACTERISTIC_UUID:
                face = decode_orientation(payload)
                if face == self._last_face:
                    logger.debug("Ignoring repeated orientation %d", face)
                    return
                self._last_face = face
                logger.info("Orientation changed to face %d", face)
                self._channel.publish(OrientationChanged(face))
            elif uuid == BATTERY_LEVEL_CHARACTERISTIC_UUID:
                level = payload[0] if payload else 0
                self._battery_level = level
                logger.debug("Battery level %d%%", level)
                self._channel.publish(BatteryLevelChanged(level))

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _set_state(self, state: LinkState) -> None:
        if state is not self._state:
            logger.debug("Link state %s -> %s", self._state.value, state.value)
            self._state = state

    def _adapter_ready(self) -> bool:
        return self._adapter_state is AdapterState.POWERED_ON and not self._suspended

    def _require_adapter(self) -> None:
        if self._adapter_state is not AdapterState.POWERED_ON:
            state = self._adapter_state.value if self._adapter_state else "unknown"
            raise LinkUnavailable(f"Bluetooth adapter is not available ({state})")

    def _publish_disconnected(self, device_id: str | None) -> None:
        self._last_disconnection_time = self._clock()
        self._last_face = None
        self._channel.publish(DeviceDisconnected(device_id, self._last_disconnection_time))

    def _attempt_connection_or_scan(self) -> None:
        if not self._adapter_ready():
            return
        if self._device_id:
            logger.info("Attempting to reconnect to known device %s", self._device_id)
            self._connect_known_device()
        else:
            logger.info("Starting device scan")
            self._set_state(LinkState.SCANNING)
            self._request_scan(SCAN_RECONNECT)
            self._cancel_scan_window_timer()
            self._scan_window_timer = self._scheduler.call_later(
                self._scan_window, self._on_scan_window_elapsed
            )

    def _connect_known_device(self) -> None:
        self._set_state(LinkState.CONNECTING)
        self._radio.connect(self._device_id)

    def _on_scan_window_elapsed(self) -> None:
        with self._lock:
            self._scan_window_timer = None
            if self._state is not LinkState.SCANNING:
                return
            logger.info("No device found within %.0fs scan window", self._scan_window)
            self._release_scan(SCAN_RECONNECT)
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect_timer()
        interval = reconnect_interval(self._reconnect_attempts)
        logger.info(
            "Starting reconnect timer with interval %.0fs (attempt #%d)",
            interval,
            self._reconnect_attempts + 1,
        )
        self._reconnect_timer = self._scheduler.call_later(interval, self._execute_reconnection)
        if self._background_scanning:
            self._set_state(LinkState.BACKGROUND_SCANNING)
        else:
            self._set_state(LinkState.AWAITING_RECONNECT)

    def _execute_reconnection(self) -> None:
        with self._lock:
            self._reconnect_timer = None
            if self._state not in (LinkState.AWAITING_RECONNECT, LinkState.BACKGROUND_SCANNING):
                return
            if not self._adapter_ready():
                return
            self._reconnect_attempts += 1
            if (
                self._reconnect_attempts >= BACKGROUND_SCAN_THRESHOLD
                and not self._background_scanning
            ):
                self._start_background_scanning()
            self._attempt_connection_or_scan()

    def _start_background_scanning(self) -> None:
        logger.info("Starting background scanning for long-term reconnection")
        self._background_scanning = True
        self._request_scan(SCAN_BACKGROUND)

    def _stop_background_scanning(self) -> None:
        if not self._background_scanning:
            return
        logger.info("Stopping background scanning")
        self._background_scanning = False
        self._release_scan(SCAN_BACKGROUND)

    def _reset_reconnection_state(self) -> None:
        self._cancel_reconnect_timer()
        self._cancel_scan_window_timer()
        self._stop_background_scanning()
        self._release_scan(SCAN_RECONNECT)
        self._reconnect_attempts = 0

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _cancel_scan_window_timer(self) -> None:
        if self._scan_window_timer is not None:
            self._scan_window_timer.cancel()
            self._scan_window_timer = None

    def _request_scan(self, reason: str) -> None:
        self._scan_reasons.add(reason)
        self._sync_scan()

    def _release_scan(self, reason: str) -> None:
        if reason in self._scan_reasons:
            self._scan_reasons.discard(reason)
            self._sync_scan()

    def _sync_scan(self) -> None:
        """Bring the radio scan in line with the outstanding scan requests."""
        if not self._scan_reasons:
            desired = None
        elif self._scan_reasons == {SCAN_BACKGROUND}:
            desired = "passive"
        else:
            desired = "active"
        if desired == self._scan_mode:
            return
        self._scan_mode = desired
        if desired is None:
            self._radio.stop_scan()
        else:
            self._radio.start_scan(passive=desired == "passive")

    def _finish_discovery(self) -> None:
        with self._lock:
            self._discovery_timer = None
            if self._discovered is None:
                return
            devices = tuple(self._discovered.values())
            self._discovered = None
            callbacks = list(self._discovery_callbacks)
            self._discovery_callbacks.clear()
            self._release_scan(SCAN_DISCOVERY)
            logger.info("Discovery finished with %d device(s)", len(devices))
            self._channel.publish(DevicesDiscovered(devices))
        for callback in callbacks:
            try:
                callback(devices)
            except Exception:
                logger.exception("Discovery callback failed")

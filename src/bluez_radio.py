"""BlueZ radio for the orientation cube.

Implements the radio commands used by ``cube_connection.ConnectionManager``
on top of the BlueZ D-Bus API. Commands return immediately; blocking D-Bus
calls (Connect, StartNotify, ...) run on worker threads with a hard timeout
and their outcome is reported back through the listener callbacks. Signals
(discovery, connection changes, characteristic notifications) require the
GLib main loop started by :func:`start_mainloop`.
"""

import logging
from logging.handlers import RotatingFileHandler
import os
import subprocess
import threading
import time

import dbus
import dbus.exceptions
import dbus.mainloop.glib
from gi.repository import GLib

from cube_connection import AdapterState
from errors import ConnectFailed
from settings import CONNECT_TIMEOUT_SECONDS, CUBE_DEVICE_NAME, LOG_DIR

# Ensure logs directory exists
os.makedirs(LOG_DIR, exist_ok=True)

# Configure logger for bluez_radio
logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.setLevel(logging.DEBUG)
    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, "bluez_radio.log"),
        maxBytes=100000,
        backupCount=1,
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    )
    logger.addHandler(handler)

# Global D-Bus operation serialization - ensure only one operation at a time
_dbus_operation_lock = threading.RLock()

# Extra buffer for hard timeout handling (seconds)
CONNECT_TIMEOUT_BUFFER_SECONDS = float(
    os.getenv("CONNECT_TIMEOUT_BUFFER_SECONDS", "2.0")
)
HARD_CONNECT_TIMEOUT_SECONDS = CONNECT_TIMEOUT_SECONDS + CONNECT_TIMEOUT_BUFFER_SECONDS

# Hard timeout for GATT operations (StartNotify/ReadValue)
GATT_TIMEOUT_SECONDS = float(os.getenv("GATT_TIMEOUT_SECONDS", "5"))

# Whether to fall back to bluetoothctl when a D-Bus connect fails
BLUETOOTHCTL_FALLBACK = os.getenv("BLUETOOTHCTL_FALLBACK", "true").lower() in (
    "1",
    "true",
    "yes",
)

# bluetoothctl fallback command
BLUETOOTHCTL_BINARY = os.getenv("BLUETOOTHCTL_BINARY", "bluetoothctl")

# BlueZ D-Bus constants
BLUEZ_SERVICE = "org.bluez"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DEVICE_INTERFACE = "org.bluez.Device1"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
GATT_CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"

LOGIN1_SERVICE = "org.freedesktop.login1"
LOGIN1_MANAGER_INTERFACE = "org.freedesktop.login1.Manager"

_system_bus: dbus.SystemBus | None = None
_adapter_path_cache: str | None = None
_dbus_mainloop_initialized = False


def _ensure_dbus_mainloop() -> None:
    global _dbus_mainloop_initialized
    if not _dbus_mainloop_initialized:
        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
        _dbus_mainloop_initialized = True


def init_dbus() -> None:
    """Initialize the D-Bus main loop and system bus once at startup."""
    _ensure_dbus_mainloop()
    _get_system_bus()


def start_mainloop() -> GLib.MainLoop:
    """Run a GLib main loop on a daemon thread so D-Bus signals are delivered."""
    init_dbus()
    mainloop = GLib.MainLoop()
    thread = threading.Thread(target=mainloop.run, name="GLibMainLoop", daemon=True)
    thread.start()
    logger.info("GLib main loop started")
    return mainloop


def _get_system_bus() -> dbus.SystemBus:
    global _system_bus
    if _system_bus is None:
        _ensure_dbus_mainloop()
        _system_bus = dbus.SystemBus()
    return _system_bus


def _dbus_to_native(value):
    if isinstance(value, (dbus.Boolean,)):
        return bool(value)
    if isinstance(value, (dbus.Byte,)):
        return int(value)
    if isinstance(value, (dbus.Int16, dbus.Int32, dbus.Int64, dbus.UInt16, dbus.UInt32, dbus.UInt64)):
        return int(value)
    if isinstance(value, (dbus.String, dbus.ObjectPath)):
        return str(value)
    if isinstance(value, dbus.Array):
        return [_dbus_to_native(item) for item in value]
    if isinstance(value, dbus.Dictionary):
        return {key: _dbus_to_native(val) for key, val in value.items()}
    return value


def _dbus_to_bytes(value) -> bytes:
    return bytes(int(item) for item in value)


def _get_managed_objects() -> dict:
    bus = _get_system_bus()
    manager = dbus.Interface(bus.get_object(BLUEZ_SERVICE, "/"), OBJECT_MANAGER_INTERFACE)
    return manager.GetManagedObjects()


def _get_adapter_path(managed_objects: dict | None = None) -> str | None:
    global _adapter_path_cache
    if _adapter_path_cache is not None:
        return _adapter_path_cache
    objects = managed_objects or _get_managed_objects()
    for path, interfaces in objects.items():
        if ADAPTER_INTERFACE in interfaces:
            _adapter_path_cache = str(path)
            return _adapter_path_cache
    return None


def _get_adapter() -> dbus.Interface | None:
    adapter_path = _get_adapter_path()
    if not adapter_path:
        return None
    bus = _get_system_bus()
    return dbus.Interface(bus.get_object(BLUEZ_SERVICE, adapter_path), ADAPTER_INTERFACE)


def _normalize_mac(address: str | None) -> str | None:
    if not address:
        return None
    return address.upper()


def get_device_snapshot() -> dict[str, dict]:
    """Fetch a snapshot of all BlueZ Device1 objects in one D-Bus call."""
    devices: dict[str, dict] = {}
    try:
        managed_objects = _get_managed_objects()
    except Exception as e:
        logger.error(f"Error fetching BlueZ managed objects: {e}")
        return devices

    for path, interfaces in managed_objects.items():
        if DEVICE_INTERFACE not in interfaces:
            continue
        props = interfaces.get(DEVICE_INTERFACE, {})
        address = _normalize_mac(_dbus_to_native(props.get("Address")))
        if not address:
            continue
        devices[address] = {
            "path": str(path),
            "address": address,
            "name": _dbus_to_native(props.get("Name")),
            "alias": _dbus_to_native(props.get("Alias")),
            "connected": bool(_dbus_to_native(props.get("Connected", False))),
            "services_resolved": bool(_dbus_to_native(props.get("ServicesResolved", False))),
            "rssi": _dbus_to_native(props.get("RSSI")),
        }
    return devices


def _find_characteristics(device_path: str, uuids: set[str]) -> dict[str, str]:
    """Return {characteristic path: uuid} for characteristics of a device matching uuids."""
    found: dict[str, str] = {}
    prefix = device_path.rstrip("/") + "/"
    for path, interfaces in _get_managed_objects().items():
        path = str(path)
        if not path.startswith(prefix) or GATT_CHARACTERISTIC_INTERFACE not in interfaces:
            continue
        uuid = str(interfaces[GATT_CHARACTERISTIC_INTERFACE].get("UUID", "")).lower()
        if uuid in uuids:
            found[path] = uuid
    return found


def _dbus_object_method(path: str, interface: str, method_name: str, *args, **kwargs):
    """Invoke a BlueZ method while serializing access to the bus."""

    with _dbus_operation_lock:
        bus = _get_system_bus()
        obj = dbus.Interface(bus.get_object(BLUEZ_SERVICE, path), interface)
        method = getattr(obj, method_name)
        return method(*args, **kwargs)


def _invoke_with_hard_timeout(
    fn, target: str, operation: str, hard_timeout: float = HARD_CONNECT_TIMEOUT_SECONDS
) -> tuple[bool, str | None]:
    """Run fn in a worker thread and enforce a hard timeout."""

    result: dict[str, str | None] = {"error": None}
    done = threading.Event()

    def _worker() -> None:
        try:
            fn()
        except Exception as exc:  # pragma: no cover - error path
            result["error"] = str(exc)
        finally:
            done.set()

    thread = threading.Thread(
        target=_worker,
        name=f"dbus-{operation}-{target}",
        daemon=True,
    )
    thread.start()
    finished = done.wait(hard_timeout)
    if not finished:
        logger.error(
            "DBus %s for %s exceeded hard timeout (%.1fs) - thread may be stuck",
            operation,
            target,
            hard_timeout,
        )
        return False, "hard timeout"
    if result["error"]:
        return False, result["error"]
    return True, None


def _run_bluetoothctl_operation(
    command: str, mac_address: str, hard_timeout: float = HARD_CONNECT_TIMEOUT_SECONDS
) -> tuple[bool, str | None]:
    """Execute a bluetoothctl command with a hard timeout."""

    try:
        completed = subprocess.run(
            [BLUETOOTHCTL_BINARY, command, mac_address],
            capture_output=True,
            text=True,
            timeout=hard_timeout,
            check=False,
        )
        stdout = (completed.stdout or "").strip()
        stderr = (completed.stderr or "").strip()
        detail = stderr or stdout or None
        if completed.returncode == 0:
            logger.info("bluetoothctl %s %s succeeded", command, mac_address)
            return True, detail
        logger.warning(
            "bluetoothctl %s %s failed (rc=%s): %s",
            command,
            mac_address,
            completed.returncode,
            detail,
        )
        return False, detail
    except subprocess.TimeoutExpired:
        logger.error(
            "bluetoothctl %s %s timed out after %.1fs",
            command,
            mac_address,
            hard_timeout,
        )
        return False, "bluetoothctl timeout"
    except FileNotFoundError as exc:  # pragma: no cover - environment specific
        logger.error("bluetoothctl binary not found: %s", exc)
        return False, "bluetoothctl missing"


def _read_connected_property(device_path: str) -> bool | None:
    """Read org.bluez.Device1.Connected via Properties.Get."""

    try:
        with _dbus_operation_lock:
            bus = _get_system_bus()
            props = dbus.Interface(
                bus.get_object(BLUEZ_SERVICE, device_path), PROPERTIES_INTERFACE
            )
            return bool(_dbus_to_native(props.Get(DEVICE_INTERFACE, "Connected")))
    except Exception as exc:
        logger.error("Failed to read Connected property for %s: %s", device_path, exc)
        return None


def _verify_connected_state(device_path: str, expect_connected: bool) -> bool:
    """Check the Connected property a few times with exponential backoff."""

    max_attempts = 3
    base_delay = 0.2
    for attempt in range(max_attempts):
        connected = _read_connected_property(device_path)
        if connected is not None and connected == expect_connected:
            return True
        if attempt < max_attempts - 1:
            time.sleep(base_delay * (2 ** attempt))
    return False


def read_adapter_state() -> AdapterState:
    """Map the BlueZ adapter's availability onto an AdapterState."""
    try:
        adapter_path = _get_adapter_path()
        if not adapter_path:
            logger.error("No Bluetooth adapter found")
            return AdapterState.UNSUPPORTED
        with _dbus_operation_lock:
            bus = _get_system_bus()
            props = dbus.Interface(bus.get_object(BLUEZ_SERVICE, adapter_path), PROPERTIES_INTERFACE)
            powered = bool(_dbus_to_native(props.Get(ADAPTER_INTERFACE, "Powered")))
    except dbus.exceptions.DBusException as exc:
        if "AccessDenied" in (exc.get_dbus_name() or ""):
            logger.error("Bluetooth access denied: %s", exc)
            return AdapterState.UNAUTHORIZED
        logger.error("Error reading adapter state: %s", exc)
        return AdapterState.UNSUPPORTED
    return AdapterState.POWERED_ON if powered else AdapterState.POWERED_OFF


def watch_sleep(on_sleep, on_wake) -> None:
    """Call on_sleep/on_wake around system suspend (logind PrepareForSleep)."""

    def _prepare_for_sleep(going_to_sleep) -> None:
        if bool(going_to_sleep):
            logger.info("System going to sleep")
            on_sleep()
        else:
            logger.info("System woke up")
            on_wake()

    _get_system_bus().add_signal_receiver(
        _prepare_for_sleep,
        signal_name="PrepareForSleep",
        dbus_interface=LOGIN1_MANAGER_INTERFACE,
        bus_name=LOGIN1_SERVICE,
    )


class BlueZRadio:
    """Radio commands for the connection manager backed by BlueZ."""

    def __init__(self, device_name: str = CUBE_DEVICE_NAME, connect_timeout: int = CONNECT_TIMEOUT_SECONDS):
        self._device_name = device_name
        self._connect_timeout = connect_timeout
        self._listener = None
        self._lock = threading.Lock()
        self._paths: dict[str, str] = {}
        self._characteristics: dict[str, tuple[str, str]] = {}
        self._pending_subscriptions: dict[str, set[str]] = {}
        self._scanning = False

    def set_listener(self, listener) -> None:
        self._listener = listener

    def start(self) -> None:
        """Register D-Bus signal handlers and report the initial adapter state."""
        bus = _get_system_bus()
        bus.add_signal_receiver(
            self._on_interfaces_added,
            dbus_interface=OBJECT_MANAGER_INTERFACE,
            signal_name="InterfacesAdded",
        )
        bus.add_signal_receiver(
            self._on_properties_changed,
            dbus_interface=PROPERTIES_INTERFACE,
            signal_name="PropertiesChanged",
            bus_name=BLUEZ_SERVICE,
            path_keyword="path",
        )
        for address, info in get_device_snapshot().items():
            self._paths[address] = info["path"]
        self._listener.on_adapter_state(read_adapter_state())

    # Commands ---------------------------------------------------------

    def start_scan(self, passive: bool = False) -> None:
        adapter = _get_adapter()
        if adapter is None:
            logger.error("No Bluetooth adapter found for scanning")
            return
        scan_filter = {"Transport": "le", "DuplicateData": dbus.Boolean(False)}
        if passive:
            # Only wake up for advertisements from the cube
            scan_filter["Pattern"] = self._device_name
        try:
            with _dbus_operation_lock:
                if self._scanning:
                    try:
                        adapter.StopDiscovery()
                    except dbus.exceptions.DBusException as e:
                        logger.debug(f"StopDiscovery before restart failed: {e}")
                adapter.SetDiscoveryFilter(dbus.Dictionary(scan_filter, signature="sv"))
                adapter.StartDiscovery()
            self._scanning = True
            logger.info("Started %s scan", "passive" if passive else "active")
        except dbus.exceptions.DBusException as e:
            if "InProgress" in str(e):
                self._scanning = True
            else:
                logger.error(f"StartDiscovery failed: {e}")
                return
        self._report_cached_devices()

    def stop_scan(self) -> None:
        if not self._scanning:
            return
        self._scanning = False
        adapter = _get_adapter()
        if adapter is None:
            return
        try:
            with _dbus_operation_lock:
                adapter.StopDiscovery()
            logger.info("Stopped scan")
        except dbus.exceptions.DBusException as e:
            logger.debug(f"StopDiscovery failed: {e}")

    def connect(self, device_id: str) -> None:
        threading.Thread(
            target=self._connect_worker,
            args=(device_id,),
            name=f"connect-{device_id}",
            daemon=True,
        ).start()

    def disconnect(self, device_id: str) -> None:
        threading.Thread(
            target=self._disconnect_worker,
            args=(device_id,),
            name=f"disconnect-{device_id}",
            daemon=True,
        ).start()

    def forget(self, device_id: str) -> None:
        """Remove the device from the adapter so it has to be discovered again."""
        device_path = self._device_path(device_id)
        with self._lock:
            self._pending_subscriptions.pop(device_id, None)
            self._characteristics = {
                path: owner for path, owner in self._characteristics.items() if owner[0] != device_id
            }
        if not device_path:
            logger.warning(f"Device {device_id} not found for removal")
            return
        adapter_path = _get_adapter_path()
        if not adapter_path:
            logger.warning("No Bluetooth adapter found for removal")
            return
        try:
            _dbus_object_method(adapter_path, ADAPTER_INTERFACE, "RemoveDevice", dbus.ObjectPath(device_path))
            self._paths.pop(device_id, None)
            logger.info(f"Successfully removed device {device_id}")
        except Exception as e:
            logger.error(f"Error removing device {device_id}: {e}")

    def subscribe(self, device_id: str, uuids) -> None:
        """Enable notifications for the given characteristics once services resolve."""
        with self._lock:
            self._pending_subscriptions[device_id] = {str(uuid).lower() for uuid in uuids}
        snapshot = get_device_snapshot().get(device_id, {})
        if snapshot.get("services_resolved"):
            self._start_subscriptions(device_id)

    # Workers ----------------------------------------------------------

    def _connect_worker(self, device_id: str) -> None:
        device_path = self._device_path(device_id)
        if not device_path:
            self._listener.on_connect_failed(device_id, ConnectFailed(f"{device_id} is not known to BlueZ"))
            return

        start = time.monotonic()
        logger.info("Connecting to %s via DBus...", device_id)
        dbus_success, dbus_error = _invoke_with_hard_timeout(
            lambda: _dbus_object_method(
                device_path, DEVICE_INTERFACE, "Connect", timeout=self._connect_timeout
            ),
            device_id,
            "connect",
            self._connect_timeout + CONNECT_TIMEOUT_BUFFER_SECONDS,
        )
        fallback_error = None
        if not dbus_success and BLUETOOTHCTL_FALLBACK:
            logger.warning(
                "DBus connect failed for %s: %s; attempting bluetoothctl fallback",
                device_id,
                dbus_error,
            )
            _, fallback_error = _run_bluetoothctl_operation("connect", device_id)

        verified = _verify_connected_state(device_path, expect_connected=True)
        duration = time.monotonic() - start
        if verified:
            logger.info("Connected to %s in %.2fs", device_id, duration)
            self._listener.on_connected(device_id)
        else:
            error = dbus_error or fallback_error or "not connected after attempt"
            logger.warning("Connect to %s failed after %.2fs: %s", device_id, duration, error)
            self._listener.on_connect_failed(device_id, ConnectFailed(error))

    def _disconnect_worker(self, device_id: str) -> None:
        device_path = self._device_path(device_id)
        if not device_path:
            logger.debug(f"Device {device_id} not found for disconnect")
            return
        success, error = _invoke_with_hard_timeout(
            lambda: _dbus_object_method(device_path, DEVICE_INTERFACE, "Disconnect"),
            device_id,
            "disconnect",
        )
        if not success:
            logger.warning("DBus disconnect failed for %s: %s", device_id, error)

    def _start_subscriptions(self, device_id: str) -> None:
        with self._lock:
            uuids = self._pending_subscriptions.pop(device_id, None)
        device_path = self._device_path(device_id)
        if not uuids or not device_path:
            return
        try:
            characteristics = _find_characteristics(device_path, uuids)
        except Exception as e:
            logger.error(f"Error listing characteristics for {device_id}: {e}")
            return
        missing = uuids - set(characteristics.values())
        if missing:
            logger.warning("Characteristics not found on %s: %s", device_id, sorted(missing))

        for char_path, uuid in characteristics.items():
            with self._lock:
                self._characteristics[char_path] = (device_id, uuid)
            success, error = _invoke_with_hard_timeout(
                lambda path=char_path: _dbus_object_method(
                    path, GATT_CHARACTERISTIC_INTERFACE, "StartNotify"
                ),
                device_id,
                "notify",
                GATT_TIMEOUT_SECONDS,
            )
            if not success:
                logger.error("StartNotify failed for %s on %s: %s", uuid, device_id, error)
                continue
            logger.info("Subscribed to %s on %s", uuid, device_id)
            self._read_initial_value(device_id, char_path, uuid)

    def _read_initial_value(self, device_id: str, char_path: str, uuid: str) -> None:
        try:
            value = _dbus_object_method(
                char_path, GATT_CHARACTERISTIC_INTERFACE, "ReadValue", dbus.Dictionary({}, signature="sv")
            )
        except Exception as e:
            logger.debug(f"ReadValue failed for {uuid} on {device_id}: {e}")
            return
        self._listener.on_characteristic_value(device_id, uuid, _dbus_to_bytes(value))

    # Signal handlers (GLib thread) ------------------------------------

    def _on_interfaces_added(self, path, interfaces) -> None:
        if DEVICE_INTERFACE not in interfaces:
            return
        props = interfaces[DEVICE_INTERFACE]
        address = _normalize_mac(_dbus_to_native(props.get("Address")))
        if not address:
            return
        self._paths[address] = str(path)
        name = _dbus_to_native(props.get("Name")) or _dbus_to_native(props.get("Alias"))
        self._listener.on_device_discovered(address, name, _dbus_to_native(props.get("RSSI")))

    def _on_properties_changed(self, interface, changed, invalidated, path=None) -> None:
        path = str(path)
        if interface == ADAPTER_INTERFACE and "Powered" in changed:
            if bool(changed["Powered"]):
                self._listener.on_adapter_state(AdapterState.POWERED_ON)
            else:
                self._scanning = False
                self._listener.on_adapter_state(AdapterState.POWERED_OFF)
        elif interface == DEVICE_INTERFACE:
            self._on_device_properties_changed(path, changed)
        elif interface == GATT_CHARACTERISTIC_INTERFACE and "Value" in changed:
            with self._lock:
                owner = self._characteristics.get(path)
            if owner:
                device_id, uuid = owner
                self._listener.on_characteristic_value(device_id, uuid, _dbus_to_bytes(changed["Value"]))

    def _on_device_properties_changed(self, path: str, changed) -> None:
        address = self._address_for_path(path)
        if not address:
            return
        if "Connected" in changed:
            if bool(changed["Connected"]):
                self._listener.on_connected(address)
            else:
                self._listener.on_disconnected(address)
        if "ServicesResolved" in changed and bool(changed["ServicesResolved"]):
            with self._lock:
                pending = address in self._pending_subscriptions
            if pending:
                threading.Thread(
                    target=self._start_subscriptions,
                    args=(address,),
                    name=f"subscribe-{address}",
                    daemon=True,
                ).start()
        if self._scanning and ("RSSI" in changed or "Name" in changed):
            name = _dbus_to_native(changed.get("Name")) or self._device_name_for(address)
            self._listener.on_device_discovered(address, name, _dbus_to_native(changed.get("RSSI")))

    # Helpers ----------------------------------------------------------

    def _report_cached_devices(self) -> None:
        """Report already-known devices that are advertising right now."""
        for address, info in get_device_snapshot().items():
            self._paths[address] = info["path"]
            if info.get("rssi") is None:
                continue
            name = info.get("name") or info.get("alias")
            self._listener.on_device_discovered(address, name, info.get("rssi"))

    def _device_path(self, device_id: str) -> str | None:
        path = self._paths.get(device_id)
        if path:
            return path
        info = get_device_snapshot().get(device_id)
        if not info:
            return None
        self._paths[device_id] = info["path"]
        return info["path"]

    def _address_for_path(self, path: str) -> str | None:
        for address, device_path in self._paths.items():
            if device_path == path:
                return address
        return None

    def _device_name_for(self, address: str) -> str | None:
        info = get_device_snapshot().get(address, {})
        return info.get("name") or info.get("alias")

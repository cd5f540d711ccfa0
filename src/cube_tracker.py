"""Cube tracker application.

Wires the connection manager, tracking engine, notification sequencer and
TimeTagger client together, dispatches cube events on a single thread, and
runs until SIGINT/SIGTERM.
"""

import logging
from logging.handlers import RotatingFileHandler
import os
import signal
import sys
import threading
import time
from datetime import datetime

from cube_connection import ConnectionManager
from cube_events import (
    BatteryLevelChanged,
    DeviceConnected,
    DeviceDisconnected,
    DevicesDiscovered,
    EventChannel,
    OrientationChanged,
)
from errors import ConfigurationError
from notification_sequencer import NotificationSequencer, desktop_notify
from scheduler import ThreadingScheduler
from settings import (
    CONTROL_API_ENABLED,
    CONTROL_API_HOST,
    CONTROL_API_PORT,
    CUBE_DEVICE_ADDRESS,
    DISCOVERY_WINDOW_SECONDS,
    LOG_DIR,
    Configuration,
    default_config_path,
    ensure_configuration_file,
    load_configuration,
)
from timetagger_client import ConnectivityMonitor, TimetaggerClient
from tracking_engine import SessionListener, TrackingEngine

logger = logging.getLogger(__name__)

# How long the dispatcher waits for an event before checking for shutdown
DISPATCH_POLL_SECONDS = 0.5


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            # Rotate log after ~100KB (approx 500 lines), keep 1 backup
            RotatingFileHandler(
                os.path.join(LOG_DIR, "cube_tracker.log"), maxBytes=100000, backupCount=1
            ),
            logging.StreamHandler(),
        ],
    )


class StatusPresenter(SessionListener):
    """Keeps what a status bar would show: activity, elapsed time, link, battery."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.current_activity = ""
        self.start_date: float | None = None
        self.device_connected = False
        self.battery_level: str | None = None

    @property
    def is_tracking(self) -> bool:
        return self.start_date is not None

    def session_started(self, description: str) -> None:
        with self._lock:
            self.current_activity = description
            self.start_date = self._clock()

    def session_stopped(self) -> None:
        with self._lock:
            self.current_activity = ""
            self.start_date = None

    def set_connected(self, connected: bool) -> None:
        self.device_connected = connected

    def set_battery_level(self, percent: int) -> None:
        self.battery_level = f"{percent}%"

    def elapsed_text(self) -> str:
        """Elapsed tracking time as HH:MM, or an empty string when idle."""
        with self._lock:
            if self.start_date is None:
                return ""
            elapsed = int(self._clock() - self.start_date)
        hours, remainder = divmod(max(0, elapsed), 3600)
        return f"{hours:02d}:{remainder // 60:02d}"

    def snapshot(self) -> dict:
        return {
            "tracking": self.is_tracking,
            "activity": self.current_activity or None,
            "elapsed": self.elapsed_text(),
            "device_connected": self.device_connected,
            "battery": self.battery_level,
        }


class CubeTracker:
    """The running application."""

    def __init__(
        self,
        config: Configuration,
        radio,
        client=None,
        deliver=desktop_notify,
        scheduler=None,
        clock=time.time,
        executor=None,
        connectivity_monitor: bool = True,
    ):
        self.config = config
        self.scheduler = scheduler or ThreadingScheduler("cube")
        self.channel = EventChannel()
        self.presenter = StatusPresenter(clock)
        self.notifications = NotificationSequencer(deliver, self.scheduler)
        self.client = client or TimetaggerClient(config.api_key, config.records_url)
        self.engine = TrackingEngine(
            self.client,
            config.page_descriptions,
            self.notifications,
            listener=self.presenter,
            clock=clock,
            executor=executor,
        )
        self.client.add_connectivity_listener(self.engine.on_connectivity_restored)
        self.connection = ConnectionManager(radio, self.channel, self.scheduler, clock=clock)
        self.radio = radio
        self.monitor = ConnectivityMonitor(self.client) if connectivity_monitor else None
        self._stop = threading.Event()
        self._dispatcher: threading.Thread | None = None

    # Lifecycle --------------------------------------------------------

    def start(self) -> None:
        logger.info("Starting cube tracker")
        if CUBE_DEVICE_ADDRESS:
            self.connection.remember_device(CUBE_DEVICE_ADDRESS)
        if self.monitor is not None:
            self.monitor.start()
        self._dispatcher = threading.Thread(target=self.run_dispatcher, name="CubeDispatcher", daemon=True)
        self._dispatcher.start()
        self.radio.start()

    def shutdown(self) -> None:
        logger.info("Shutting down cube tracker")
        # Stop every event source before the engine closes the last session
        self.connection.shutdown()
        if self.monitor is not None:
            self.monitor.stop()
        self._stop.set()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=DISPATCH_POLL_SECONDS * 4)
        self.engine.shutdown(wait=True)
        self.scheduler.cancel_all()
        logger.info("Cube tracker shutdown complete")

    # Event dispatch ---------------------------------------------------

    def run_dispatcher(self) -> None:
        while not self._stop.is_set():
            event = self.channel.get(timeout=DISPATCH_POLL_SECONDS)
            if event is None:
                continue
            try:
                self.dispatch(event)
            except Exception as e:
                logger.error(f"Error dispatching {event!r}: {e}")

    def process_pending_events(self) -> int:
        """Dispatch everything already queued; returns the number of events."""
        events = self.channel.drain()
        for event in events:
            self.dispatch(event)
        return len(events)

    def dispatch(self, event) -> None:
        if isinstance(event, OrientationChanged):
            self.engine.on_orientation_changed(event.face)
        elif isinstance(event, DeviceConnected):
            self.presenter.set_connected(True)
            self.engine.on_device_connected()
        elif isinstance(event, DeviceDisconnected):
            self.presenter.set_connected(False)
            self.engine.on_device_disconnected()
        elif isinstance(event, BatteryLevelChanged):
            self.presenter.set_battery_level(event.percent)
        elif isinstance(event, DevicesDiscovered):
            logger.info("Discovery found %d cube(s)", len(event.devices))
        else:
            logger.debug("Unhandled event %r", event)

    # User actions -----------------------------------------------------

    def find_devices(self, window: float = DISCOVERY_WINDOW_SECONDS) -> list:
        """Run a discovery window and block until it finishes."""
        done = threading.Event()
        found: list = []

        def _complete(devices) -> None:
            found.extend(devices)
            done.set()

        self.connection.discover_devices(_complete, window=window)
        done.wait(window + 5)
        return found

    def connect_device(self, device_id: str) -> None:
        self.connection.connect_to_device(device_id.upper())

    def forget_device(self) -> None:
        self.connection.forget_device()
        self.presenter.set_connected(False)

    def stop_tracking(self) -> bool:
        return self.engine.stop_tracking()

    def status(self) -> dict:
        return {
            "session": self.presenter.snapshot(),
            "engine": self.engine.snapshot(),
            "connection": self.connection.snapshot(),
            "remote_connected": self.client.is_connected,
            "timetagger_url": self.config.web_url,
            "notifications_pending": self.notifications.pending,
        }


def run_cube_tracker(config: Configuration) -> None:
    """Run the tracker until interrupted."""
    import bluez_radio
    import control_api

    logger.info("Starting Cube Tracker at %s", datetime.now().isoformat())
    logger.info("Tracked faces: %s", {k: v for k, v in config.page_descriptions.items() if v})

    mainloop = bluez_radio.start_mainloop()
    tracker = CubeTracker(config, bluez_radio.BlueZRadio())
    bluez_radio.watch_sleep(tracker.connection.suspend, tracker.connection.resume)

    stop = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        tracker.start()
        if CONTROL_API_ENABLED:
            control_api.serve_in_background(tracker, CONTROL_API_HOST, CONTROL_API_PORT)
        while not stop.is_set():
            stop.wait(1.0)
    except Exception as e:
        logger.error(f"Fatal error in cube tracker: {e}")
        raise
    finally:
        tracker.shutdown()
        mainloop.quit()


def main() -> None:
    """Entry point for the cube tracker."""
    configure_logging()
    try:
        if ensure_configuration_file():
            logger.critical(
                f"Created configuration template at {default_config_path()}; fill it in and restart"
            )
            sys.exit(1)
        config = load_configuration()
    except ConfigurationError as e:
        logger.critical(str(e))
        sys.exit(1)
    try:
        run_cube_tracker(config)
    except Exception as e:
        logger.critical(f"Cube tracker crashed: {e}")
        raise


if __name__ == "__main__":
    main()

"""End-to-end tests of the tracker wiring with fake radio, remote and timers."""
from __future__ import annotations

import unittest

from fakes import (
    FakeClock,
    FakeRadio,
    FakeScheduler,
    FakeTimetaggerClient,
    InlineExecutor,
)

from cube_connection import (  # noqa: E402  pylint: disable=wrong-import-position
    BATTERY_LEVEL_CHARACTERISTIC_UUID,
    ORIENTATION_CHARACTERISTIC_UUID,
    AdapterState,
    LinkState,
)
from cube_tracker import CubeTracker, StatusPresenter  # noqa: E402
from settings import Configuration  # noqa: E402

MAC = "AA:BB:CC:DD:EE:FF"


class CubeTrackerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(10_000)
        self.radio = FakeRadio()
        self.remote = FakeTimetaggerClient()
        self.scheduler = FakeScheduler()
        self.delivered = []
        config = Configuration("secret", "https://t", {1: "Meetings", 2: "Coding", 3: ""})
        self.tracker = CubeTracker(
            config,
            self.radio,
            client=self.remote,
            deliver=self.delivered.append,
            scheduler=self.scheduler,
            clock=self.clock,
            executor=InlineExecutor(),
            connectivity_monitor=False,
        )
        self.connection = self.radio.listener

    def connect(self) -> None:
        self.connection.on_adapter_state(AdapterState.POWERED_ON)
        self.connection.on_device_discovered(MAC, "Timeular Tracker", -50)
        self.connection.on_connected(MAC)
        self.tracker.process_pending_events()

    def turn(self, face: int) -> None:
        self.connection.on_characteristic_value(MAC, ORIENTATION_CHARACTERISTIC_UUID, bytes([face]))
        self.tracker.process_pending_events()

    def test_radio_reports_to_connection_manager(self) -> None:
        self.assertIs(self.connection, self.tracker.connection)

    def test_turning_the_cube_tracks_activity(self) -> None:
        self.connect()
        self.turn(2)

        status = self.tracker.status()
        self.assertTrue(status["session"]["device_connected"])
        self.assertEqual(status["session"]["activity"], "Coding")
        self.assertEqual(status["connection"]["state"], LinkState.CONNECTED.value)
        self.assertEqual(self.remote.submitted[0].label, "Coding")

        self.clock.now += 3700
        self.assertEqual(self.tracker.presenter.elapsed_text(), "01:01")

        self.turn(0)
        self.assertFalse(self.tracker.status()["session"]["tracking"])
        final = self.remote.submitted[-1]
        self.assertEqual(final.duration, 3700)

    def test_notifications_are_spaced(self) -> None:
        self.connect()
        self.turn(1)
        self.clock.now += 60
        self.turn(2)

        self.assertEqual([n.body for n in self.delivered], ["Started tracking: Meetings"])
        self.assertEqual(self.tracker.notifications.pending, 2)

        self.scheduler.advance(10)
        self.assertEqual(
            [n.body for n in self.delivered],
            ["Started tracking: Meetings", "Finished tracking: Meetings (1m 0s)", "Started tracking: Coding"],
        )

    def test_disconnect_keeps_session_and_buffers_offline_entries(self) -> None:
        self.connect()
        self.turn(1)
        self.connection.on_disconnected(MAC, "link loss")
        self.tracker.process_pending_events()

        status = self.tracker.status()
        self.assertFalse(status["session"]["device_connected"])
        self.assertTrue(status["session"]["tracking"])

        self.remote.reachable = False
        self.clock.now += 120
        self.assertTrue(self.tracker.stop_tracking())
        self.assertEqual(self.tracker.status()["engine"]["buffered"], 1)

        self.remote.restore()
        self.assertEqual(self.tracker.status()["engine"]["buffered"], 0)

    def test_battery_level_is_shown(self) -> None:
        self.connect()
        self.connection.on_characteristic_value(MAC, BATTERY_LEVEL_CHARACTERISTIC_UUID, bytes([64]))
        self.tracker.process_pending_events()

        self.assertEqual(self.tracker.status()["session"]["battery"], "64%")

    def test_connect_and_forget_device(self) -> None:
        self.connection.on_adapter_state(AdapterState.POWERED_ON)
        self.tracker.connect_device(MAC.lower())
        self.assertEqual(self.radio.calls[-1], ("connect", MAC))

        self.connection.on_connected(MAC)
        self.tracker.process_pending_events()
        self.tracker.forget_device()
        self.tracker.process_pending_events()

        self.assertFalse(self.tracker.presenter.device_connected)
        self.assertEqual(self.radio.calls[-1], ("forget", MAC))
        self.assertIsNone(self.tracker.status()["connection"]["device_id"])

    def test_start_and_shutdown(self) -> None:
        self.tracker.start()
        self.assertIn(("start",), self.radio.calls)

        self.tracker.shutdown()
        self.assertEqual(self.scheduler.pending, [])

    def test_shutdown_stops_event_sources_before_engine(self) -> None:
        self.tracker.start()
        order = []
        connection_shutdown = self.tracker.connection.shutdown
        engine_shutdown = self.tracker.engine.shutdown

        def record_connection() -> None:
            order.append("connection")
            connection_shutdown()

        def record_engine(wait: bool = True) -> None:
            order.append(("engine", self.tracker._dispatcher.is_alive()))
            engine_shutdown(wait=wait)

        self.tracker.connection.shutdown = record_connection
        self.tracker.engine.shutdown = record_engine
        self.tracker.shutdown()

        self.assertEqual(order, ["connection", ("engine", False)])

    def test_shutdown_closes_open_session(self) -> None:
        self.connect()
        self.turn(1)
        self.clock.now += 120

        self.tracker.shutdown()

        final = self.remote.submitted[-1]
        self.assertEqual((final.label, final.duration), ("Meetings", 120))
        self.assertFalse(self.tracker.presenter.is_tracking)

    def test_status_links_to_timetagger(self) -> None:
        self.assertEqual(self.tracker.status()["timetagger_url"], "https://t/timetagger/app/")


class StatusPresenterTests(unittest.TestCase):
    def test_idle_presenter(self) -> None:
        presenter = StatusPresenter(FakeClock(0))

        self.assertEqual(presenter.elapsed_text(), "")
        self.assertFalse(presenter.snapshot()["tracking"])

    def test_session_timer(self) -> None:
        clock = FakeClock(0)
        presenter = StatusPresenter(clock)
        presenter.session_started("Coding")
        clock.now = 2 * 3600 + 5 * 60 + 59

        self.assertEqual(presenter.elapsed_text(), "02:05")
        presenter.session_stopped()
        self.assertIsNone(presenter.snapshot()["activity"])


if __name__ == "__main__":
    unittest.main()

"""Tests for the local control API routes."""
from __future__ import annotations

import unittest
from unittest.mock import MagicMock

import fakes  # noqa: F401  pylint: disable=unused-import

from control_api import create_app  # noqa: E402  pylint: disable=wrong-import-position
from cube_events import DiscoveredDevice  # noqa: E402
from errors import LinkUnavailable  # noqa: E402


class ControlApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tracker = MagicMock()
        self.client = create_app(self.tracker).test_client()

    def test_status(self) -> None:
        self.tracker.status.return_value = {"session": {"tracking": False}}

        response = self.client.get("/api/status")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"session": {"tracking": False}})

    def test_open_timetagger_redirects_to_web_app(self) -> None:
        self.tracker.config.web_url = "https://timetagger.example/timetagger/app/"

        response = self.client.get("/api/open-timetagger")

        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["Location"], "https://timetagger.example/timetagger/app/")

    def test_stop_tracking(self) -> None:
        self.tracker.stop_tracking.return_value = True

        response = self.client.post("/api/stop-tracking")

        self.assertEqual(response.get_json(), {"success": True, "stopped": True})

    def test_find_devices(self) -> None:
        self.tracker.find_devices.return_value = [
            DiscoveredDevice("AA:BB:CC:DD:EE:FF", "Timeular Tracker", -60)
        ]

        response = self.client.post("/api/find-devices")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.get_json()["devices"],
            [{"deviceId": "AA:BB:CC:DD:EE:FF", "name": "Timeular Tracker", "rssi": -60}],
        )

    def test_find_devices_without_adapter(self) -> None:
        self.tracker.find_devices.side_effect = LinkUnavailable("Bluetooth adapter is not available")

        response = self.client.post("/api/find-devices")

        self.assertEqual(response.status_code, 503)
        self.assertIn("error", response.get_json())

    def test_connect_device(self) -> None:
        response = self.client.post("/api/connect-device", json={"deviceId": "aa:bb:cc:dd:ee:ff"})

        self.assertEqual(response.status_code, 202)
        self.tracker.connect_device.assert_called_once_with("aa:bb:cc:dd:ee:ff")

    def test_connect_device_requires_id(self) -> None:
        response = self.client.post("/api/connect-device", json={})

        self.assertEqual(response.status_code, 400)
        self.tracker.connect_device.assert_not_called()

    def test_connect_device_without_adapter(self) -> None:
        self.tracker.connect_device.side_effect = LinkUnavailable("off")

        response = self.client.post("/api/connect-device", json={"deviceId": "AA:BB:CC:DD:EE:FF"})

        self.assertEqual(response.status_code, 503)

    def test_forget_device(self) -> None:
        response = self.client.post("/api/forget-device")

        self.assertEqual(response.status_code, 200)
        self.tracker.forget_device.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()

"""Minimal tests for the BlueZ radio's connect verification and signal routing."""
from __future__ import annotations

import unittest
from unittest.mock import MagicMock, patch

import fakes  # noqa: F401  pylint: disable=unused-import

import bluez_radio  # noqa: E402  pylint: disable=wrong-import-position
from cube_connection import (  # noqa: E402
    ORIENTATION_CHARACTERISTIC_UUID,
    AdapterState,
)
from errors import ConnectFailed  # noqa: E402


class BlueZRadioTests(unittest.TestCase):
    mac = "AA:BB:CC:DD:EE:FF"
    path = "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF"

    def setUp(self) -> None:
        self.listener = MagicMock()
        self.radio = bluez_radio.BlueZRadio(device_name="Timeular Tracker", connect_timeout=1)
        self.radio.set_listener(self.listener)
        self.radio._paths[self.mac] = self.path

    @patch("bluez_radio._read_connected_property", return_value=True)
    @patch("bluez_radio._invoke_with_hard_timeout", return_value=(True, None))
    def test_connect_reports_verified_connection(self, _mock_invoke, mock_read_connected) -> None:
        """A connect is only reported once the Connected property confirms it."""

        self.radio._connect_worker(self.mac)

        mock_read_connected.assert_called_with(self.path)
        self.listener.on_connected.assert_called_once_with(self.mac)
        self.listener.on_connect_failed.assert_not_called()

    @patch("bluez_radio.time.sleep")
    @patch("bluez_radio._run_bluetoothctl_operation", return_value=(False, "failed"))
    @patch("bluez_radio._read_connected_property", return_value=False)
    @patch("bluez_radio._invoke_with_hard_timeout", return_value=(False, "hard timeout"))
    def test_connect_failure_is_reported(
        self,
        _mock_invoke,
        _mock_read_connected,
        _mock_fallback,
        _mock_sleep,
    ) -> None:
        self.radio._connect_worker(self.mac)

        self.listener.on_connected.assert_not_called()
        device_id, error = self.listener.on_connect_failed.call_args[0]
        self.assertEqual(device_id, self.mac)
        self.assertIsInstance(error, ConnectFailed)
        self.assertIn("hard timeout", str(error))

    @patch("bluez_radio.get_device_snapshot", return_value={})
    def test_connect_to_unknown_device_fails_fast(self, _mock_snapshot) -> None:
        self.radio._connect_worker("11:22:33:44:55:66")

        device_id, error = self.listener.on_connect_failed.call_args[0]
        self.assertEqual(device_id, "11:22:33:44:55:66")
        self.assertIsInstance(error, ConnectFailed)

    def test_connected_property_is_routed(self) -> None:
        self.radio._on_properties_changed(bluez_radio.DEVICE_INTERFACE, {"Connected": True}, [], path=self.path)
        self.radio._on_properties_changed(bluez_radio.DEVICE_INTERFACE, {"Connected": False}, [], path=self.path)

        self.listener.on_connected.assert_called_once_with(self.mac)
        self.listener.on_disconnected.assert_called_once_with(self.mac)

    def test_adapter_power_is_routed(self) -> None:
        adapter_path = "/org/bluez/hci0"
        self.radio._on_properties_changed(bluez_radio.ADAPTER_INTERFACE, {"Powered": False}, [], path=adapter_path)
        self.radio._on_properties_changed(bluez_radio.ADAPTER_INTERFACE, {"Powered": True}, [], path=adapter_path)

        states = [call.args[0] for call in self.listener.on_adapter_state.call_args_list]
        self.assertEqual(states, [AdapterState.POWERED_OFF, AdapterState.POWERED_ON])

    def test_characteristic_notifications_are_routed(self) -> None:
        char_path = self.path + "/service0010/char0011"
        self.radio._characteristics[char_path] = (self.mac, ORIENTATION_CHARACTERISTIC_UUID)

        self.radio._on_properties_changed(
            bluez_radio.GATT_CHARACTERISTIC_INTERFACE, {"Value": [5, 0]}, [], path=char_path
        )
        self.radio._on_properties_changed(
            bluez_radio.GATT_CHARACTERISTIC_INTERFACE, {"Value": [2]}, [], path="/unknown"
        )

        self.listener.on_characteristic_value.assert_called_once_with(
            self.mac, ORIENTATION_CHARACTERISTIC_UUID, bytes([5, 0])
        )

    def test_new_device_is_reported_as_discovered(self) -> None:
        new_path = "/org/bluez/hci0/dev_11_22_33_44_55_66"
        self.radio._on_interfaces_added(
            new_path,
            {bluez_radio.DEVICE_INTERFACE: {"Address": "11:22:33:44:55:66", "Name": "Timeular Tracker", "RSSI": -55}},
        )

        self.listener.on_device_discovered.assert_called_once_with(
            "11:22:33:44:55:66", "Timeular Tracker", -55
        )
        self.assertEqual(self.radio._paths["11:22:33:44:55:66"], new_path)

    @patch("bluez_radio.get_device_snapshot", return_value={})
    @patch("bluez_radio._get_adapter")
    def test_passive_scan_filters_on_device_name(self, mock_adapter, _mock_snapshot) -> None:
        adapter = mock_adapter.return_value

        self.radio.start_scan(passive=True)

        scan_filter = adapter.SetDiscoveryFilter.call_args[0][0]
        self.assertEqual(scan_filter["Pattern"], "Timeular Tracker")
        adapter.StartDiscovery.assert_called_once()

        self.radio.stop_scan()
        adapter.StopDiscovery.assert_called_once()

    @patch("bluez_radio.get_device_snapshot", return_value={})
    @patch("bluez_radio._get_adapter")
    def test_active_scan_has_no_pattern(self, mock_adapter, _mock_snapshot) -> None:
        adapter = mock_adapter.return_value

        self.radio.start_scan(passive=False)

        scan_filter = adapter.SetDiscoveryFilter.call_args[0][0]
        self.assertNotIn("Pattern", scan_filter)


if __name__ == "__main__":
    unittest.main()

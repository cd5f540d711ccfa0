"""Tests for loading and saving the user configuration."""
from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

import fakes  # noqa: F401  pylint: disable=unused-import

from errors import ConfigurationError  # noqa: E402  pylint: disable=wrong-import-position
from settings import (  # noqa: E402
    Configuration,
    ensure_configuration_file,
    load_configuration,
    save_configuration,
)


class ConfigurationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = Path(self._tmp.name) / "config.json"

    def write(self, data) -> None:
        self.path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")

    def test_load_converts_face_keys(self) -> None:
        self.write(
            {
                "apiKey": "secret",
                "timetaggerUrl": "https://timetagger.example/",
                "pageDescriptions": {"1": "Meetings", "2": "", "8": " Coding "},
            }
        )

        config = load_configuration(self.path)

        self.assertEqual(config.page_descriptions, {1: "Meetings", 2: "", 8: "Coding"})
        self.assertEqual(config.description_for(1), "Meetings")
        self.assertIsNone(config.description_for(2))
        self.assertIsNone(config.description_for(5))
        self.assertEqual(config.records_url, "https://timetagger.example/timetagger/api/v2/records")

    def test_missing_file(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            load_configuration(self.path)
        self.assertIn("Missing configuration file", str(ctx.exception))

    def test_invalid_documents(self) -> None:
        for data in (
            "{not json",
            ["apiKey"],
            {"apiKey": "secret"},
            {"apiKey": "secret", "timetaggerUrl": "https://t", "pageDescriptions": {"one": "x"}},
            {"apiKey": "secret", "timetaggerUrl": "https://t", "pageDescriptions": {"1": 5}},
        ):
            self.write(data)
            with self.assertRaises(ConfigurationError, msg=repr(data)):
                load_configuration(self.path)

    def test_save_round_trip(self) -> None:
        config = Configuration("secret", "https://t", {2: "Review", 1: "Meetings"})
        target = Path(self._tmp.name) / "nested" / "config.json"

        save_configuration(config, target)

        saved = json.loads(target.read_text(encoding="utf-8"))
        self.assertEqual(saved["pageDescriptions"], {"1": "Meetings", "2": "Review"})
        self.assertEqual(load_configuration(target), config)

    def test_template_written_only_once(self) -> None:
        self.assertTrue(ensure_configuration_file(self.path))
        self.assertFalse(ensure_configuration_file(self.path))

        saved = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(saved["pageDescriptions"], {str(face): "" for face in range(1, 9)})
        # The template is incomplete until the user fills it in
        with self.assertRaises(ConfigurationError):
            load_configuration(self.path)


if __name__ == "__main__":
    unittest.main()

"""Configuration for the cube tracker.

Two sources are combined here:

- Tunables are read from the environment (optionally via a ``.env`` file) as
  module-level constants, so a deployment can adjust thresholds and timeouts
  without touching the code.
- The user configuration (API key, TimeTagger URL and the face-to-activity
  mapping) lives in ``~/.tcube-timetagger/config.json`` and is loaded with
  :func:`load_configuration`.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# Advertised name of the orientation cube
CUBE_DEVICE_NAME = os.getenv("CUBE_DEVICE_NAME", "Timeular Tracker")

# Address of an already paired cube; empty means discover one by name
CUBE_DEVICE_ADDRESS = os.getenv("CUBE_DEVICE_ADDRESS", "").upper() or None

# Manual discovery window (seconds)
DISCOVERY_WINDOW_SECONDS = float(os.getenv("DISCOVERY_WINDOW_SECONDS", "10"))

# How long an ordinary reconnect scan waits for the cube before giving up (seconds)
SCAN_WINDOW_SECONDS = float(os.getenv("SCAN_WINDOW_SECONDS", "10"))

# How long to wait for D-Bus connect attempts (seconds)
CONNECT_TIMEOUT_SECONDS = int(os.getenv("CONNECT_TIMEOUT_SECONDS", "10"))

# Timeout for TimeTagger requests (seconds)
REMOTE_TIMEOUT_SECONDS = float(os.getenv("REMOTE_TIMEOUT_SECONDS", "30"))

# Sessions shorter than this are cancelled as noise flips (seconds)
MIN_TRACKING_SECONDS = int(os.getenv("MIN_TRACKING_SECONDS", "10"))

# A remote record whose end lags "now" by a gap inside this window is still live
MODIFY_GAP_MIN_SECONDS = int(os.getenv("MODIFY_GAP_MIN_SECONDS", "20"))
MODIFY_GAP_MAX_SECONDS = int(os.getenv("MODIFY_GAP_MAX_SECONDS", "60"))

# How far back to look for an existing record of the session (seconds)
LOOKBACK_SECONDS = int(os.getenv("LOOKBACK_SECONDS", "86400"))

# Pause between two user notifications (seconds)
NOTIFICATION_SPACING_SECONDS = float(os.getenv("NOTIFICATION_SPACING_SECONDS", "5"))

# How often the TimeTagger server is checked for reachability (seconds)
CONNECTIVITY_CHECK_INTERVAL = float(os.getenv("CONNECTIVITY_CHECK_INTERVAL", "30"))

# Local control API
CONTROL_API_ENABLED = _env_bool("CONTROL_API_ENABLED", "true")
CONTROL_API_HOST = os.getenv("CONTROL_API_HOST", "127.0.0.1")
CONTROL_API_PORT = int(os.getenv("CONTROL_API_PORT", "5000"))

LOG_DIR = os.getenv("LOG_DIR", "logs")

CONFIG_DIRECTORY_NAME = ".tcube-timetagger"
CONFIG_FILE_NAME = "config.json"
RECORDS_API_PATH = "/timetagger/api/v2/records"
WEB_APP_PATH = "/timetagger/app/"


@dataclass(frozen=True)
class Configuration:
    """User configuration loaded from ``config.json``."""

    api_key: str
    timetagger_url: str
    page_descriptions: dict[int, str] = field(default_factory=dict)

    @property
    def records_url(self) -> str:
        return self.timetagger_url.rstrip("/") + RECORDS_API_PATH

    @property
    def web_url(self) -> str:
        return self.timetagger_url.rstrip("/") + WEB_APP_PATH

    def description_for(self, face: int) -> str | None:
        """Return the activity for a face, or None when the face is untracked."""
        description = self.page_descriptions.get(face)
        if not description:
            return None
        return description

    def to_json(self) -> dict:
        return {
            "apiKey": self.api_key,
            "timetaggerUrl": self.timetagger_url,
            "pageDescriptions": {
                str(face): description
                for face, description in sorted(self.page_descriptions.items())
            },
        }


def default_config_path() -> Path:
    override = os.getenv("CUBE_CONFIG_PATH")
    if override:
        return Path(override).expanduser()
    return Path.home() / CONFIG_DIRECTORY_NAME / CONFIG_FILE_NAME


def _parse_page_descriptions(raw) -> dict[int, str]:
    if not isinstance(raw, dict):
        raise ConfigurationError("pageDescriptions must be an object keyed by face number")
    pages: dict[int, str] = {}
    for key, value in raw.items():
        try:
            face = int(key)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid face number in pageDescriptions: {key!r}")
        if value is not None and not isinstance(value, str):
            raise ConfigurationError(f"Description for face {face} must be a string")
        pages[face] = (value or "").strip()
    return pages


def load_configuration(path: Path | str | None = None) -> Configuration:
    """
    Load the user configuration.

    Args:
        path: Optional explicit path; defaults to ``~/.tcube-timetagger/config.json``
              or ``CUBE_CONFIG_PATH``.

    Returns:
        The parsed Configuration.

    Raises:
        ConfigurationError: if the file is missing, unreadable or incomplete.
    """
    config_path = Path(path) if path is not None else default_config_path()
    try:
        with open(config_path, encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        raise ConfigurationError(
            f"Missing configuration file {config_path}; create it and restart"
        )
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Error loading configuration {config_path}: {exc}")

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be an object")

    api_key = data.get("apiKey")
    timetagger_url = data.get("timetaggerUrl")
    if not api_key or not timetagger_url:
        raise ConfigurationError("Configuration requires apiKey and timetaggerUrl")

    config = Configuration(
        api_key=str(api_key),
        timetagger_url=str(timetagger_url),
        page_descriptions=_parse_page_descriptions(data.get("pageDescriptions", {})),
    )
    tracked = sum(1 for description in config.page_descriptions.values() if description)
    logger.info("Loaded configuration from %s (%d tracked faces)", config_path, tracked)
    return config


def save_configuration(config: Configuration, path: Path | str | None = None) -> Path:
    """Write the configuration as pretty-printed JSON, creating its directory."""
    config_path = Path(path) if path is not None else default_config_path()
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as handle:
            json.dump(config.to_json(), handle, indent=2)
    except OSError as exc:
        raise ConfigurationError(f"Error saving configuration {config_path}: {exc}")
    logger.info("Saved configuration to %s", config_path)
    return config_path


def ensure_configuration_file(path: Path | str | None = None, faces: int = 8) -> bool:
    """
    Write a template configuration if none exists yet.

    Returns True when a template was written; the user still has to fill in
    ``apiKey``, ``timetaggerUrl`` and the face descriptions.
    """
    config_path = Path(path) if path is not None else default_config_path()
    if config_path.exists():
        return False
    template = Configuration(
        api_key="",
        timetagger_url="",
        page_descriptions={face: "" for face in range(1, faces + 1)},
    )
    save_configuration(template, config_path)
    return True

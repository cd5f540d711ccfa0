"""TimeTagger records API client.

Sends and fetches time entries and keeps track of whether the server is
reachable, so buffered entries can be replayed as soon as it comes back.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from errors import RemoteRejected, RemoteUnreachable
from settings import CONNECTIVITY_CHECK_INTERVAL, REMOTE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

HIDDEN_PREFIX = "HIDDEN"
HTTP_STATUS_OK = 200
CONNECTIVITY_CHECK_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class TimeEntry:
    """One tracked interval as exchanged with TimeTagger.

    Entries are never modified; a changed entry is a new one with the same key.
    """

    key: str
    t1: int
    t2: int
    label: str
    hidden: bool = False
    created_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def description(self) -> str:
        """Label as stored remotely, marked when hidden."""
        if self.hidden:
            return f"{HIDDEN_PREFIX} {self.label}"
        return self.label

    @property
    def duration(self) -> int:
        return self.t2 - self.t1

    def to_record(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "mt": self.created_at,
            "t1": self.t1,
            "t2": self.t2,
            "ds": self.description,
            "st": 0.0,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TimeEntry":
        """Build an entry from a TimeTagger record; raises ValueError when malformed."""
        try:
            ds = str(record.get("ds", ""))
            hidden = HIDDEN_PREFIX in ds
            label = ds[len(HIDDEN_PREFIX):].strip() if ds.startswith(HIDDEN_PREFIX) else ds
            return cls(
                key=str(record["key"]),
                t1=int(record["t1"]),
                t2=int(record["t2"]),
                label=label,
                hidden=hidden,
                created_at=int(record.get("mt", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed record: {exc}")


class TimetaggerClient:
    """Client for ``/timetagger/api/v2/records``."""

    def __init__(
        self,
        api_key: str,
        records_url: str,
        timeout: float = REMOTE_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.records_url = records_url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"authtoken": api_key})
        self._reachable: bool | None = None
        self._state_lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def is_connected(self) -> bool:
        return bool(self._reachable)

    def add_connectivity_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback fired when the server becomes reachable again."""
        self._listeners.append(listener)

    def submit_entry(self, entry: TimeEntry) -> dict[str, Any]:
        """
        Upsert an entry.

        Returns:
            The decoded server response.

        Raises:
            RemoteUnreachable: transport error, non-200 status or malformed response.
            RemoteRejected: the response does not list the entry as accepted.
        """
        try:
            response = self.session.put(
                self.records_url,
                json=[entry.to_record()],
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"Error sending entry {entry.key}: {exc}")

        if response.status_code != HTTP_STATUS_OK:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"API error with status code {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"Error parsing response: {exc}")
        if not isinstance(payload, dict):
            self._mark_reachable(False)
            raise RemoteUnreachable("Invalid response format")

        self._mark_reachable(True)
        accepted = payload.get("accepted")
        if not isinstance(accepted, list) or entry.key not in accepted:
            raise RemoteRejected(entry.key, payload)
        logger.debug("Entry %s accepted", entry.key)
        return payload

    def fetch_entry(self, key: str, window_start: int, window_end: int) -> TimeEntry | None:
        """
        Return the record with ``key`` inside ``[window_start, window_end]``, if any.

        Raises:
            RemoteUnreachable: transport error or malformed response.
        """
        try:
            response = self.session.get(
                self.records_url,
                params={"timerange": f"{window_start}-{window_end}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"Error getting existing entry {key}: {exc}")

        if response.status_code != HTTP_STATUS_OK:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"API error with status code {response.status_code}")

        try:
            payload = response.json()
            records = payload["records"]
            if not isinstance(records, list):
                raise TypeError("records is not a list")
            matches = [
                TimeEntry.from_record(record)
                for record in records
                if isinstance(record, dict) and record.get("key") == key
            ]
            # Most recently modified copy wins
            match = max(matches, key=lambda entry: entry.created_at) if matches else None
        except (ValueError, KeyError, TypeError) as exc:
            self._mark_reachable(False)
            raise RemoteUnreachable(f"Invalid JSON format or missing 'records' key: {exc}")

        self._mark_reachable(True)
        return match

    def check_connectivity(self) -> bool:
        """Check the server; any HTTP answer counts as reachable."""
        try:
            self.session.head(self.records_url, timeout=CONNECTIVITY_CHECK_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            logger.debug("Connectivity check failed: %s", exc)
            self._mark_reachable(False)
            return False
        self._mark_reachable(True)
        return True

    def _mark_reachable(self, reachable: bool) -> None:
        with self._state_lock:
            was_reachable = self._reachable
            self._reachable = reachable
        if was_reachable is False and reachable:
            logger.info("Internet connection restored")
            for listener in list(self._listeners):
                try:
                    listener()
                except Exception:
                    logger.exception("Connectivity listener failed")
        elif was_reachable and not reachable:
            logger.info("Internet connection lost")


class ConnectivityMonitor:
    """Background thread probing the server so reconnects are noticed while idle."""

    def __init__(self, client: TimetaggerClient, interval: float = CONNECTIVITY_CHECK_INTERVAL):
        self._client = client
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="ConnectivityMonitor", daemon=True)
        self._thread.start()
        logger.info("Connectivity monitor started (interval=%.0fs)", self._interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._client.check_connectivity()
            except Exception as e:
                logger.error(f"Error during connectivity check: {e}")
            self._stop.wait(self._interval)

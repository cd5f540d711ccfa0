"""User notifications, delivered one at a time.

The tracking engine can produce several notifications within a second
(e.g. "finished" followed by "started" on a page change). The sequencer keeps
them in order and leaves a pause between two deliveries so each one can be
read.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable

from settings import NOTIFICATION_SPACING_SECONDS

logger = logging.getLogger(__name__)

NOTIFY_SEND_BINARY = os.getenv("NOTIFY_SEND_BINARY", "notify-send")
NOTIFY_SEND_TIMEOUT_SECONDS = 5
APP_NAME = "Cube Tracker"


@dataclass(frozen=True)
class NotificationRequest:
    title: str
    body: str
    category: str = "general"


def desktop_notify(request: NotificationRequest) -> None:
    """Show a desktop notification through notify-send; raises on failure."""
    subprocess.run(
        [
            NOTIFY_SEND_BINARY,
            "--app-name",
            APP_NAME,
            "--category",
            f"tracking.{request.category}",
            request.title,
            request.body,
        ],
        capture_output=True,
        text=True,
        timeout=NOTIFY_SEND_TIMEOUT_SECONDS,
        check=True,
    )


class NotificationSequencer:
    """FIFO of notifications with a single in-flight slot."""

    def __init__(
        self,
        deliver: Callable[[NotificationRequest], None],
        scheduler,
        spacing: float = NOTIFICATION_SPACING_SECONDS,
    ):
        self._deliver = deliver
        self._scheduler = scheduler
        self._spacing = spacing
        self._queue: deque[NotificationRequest] = deque()
        self._in_flight = False
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def enqueue(self, title: str, body: str, category: str = "general") -> NotificationRequest:
        request = NotificationRequest(title, body, category)
        logger.info("Queueing notification: %s - %s", title, body)
        with self._lock:
            self._queue.append(request)
        self._process_next()
        return request

    def _process_next(self) -> None:
        with self._lock:
            if self._in_flight or not self._queue:
                return
            request = self._queue.popleft()
            self._in_flight = True

        logger.debug("Delivering notification: %s", request.title)
        try:
            self._deliver(request)
        except Exception as exc:
            logger.error("Error delivering notification '%s': %s", request.title, exc)
        self._scheduler.call_later(self._spacing, self._release)

    def _release(self) -> None:
        with self._lock:
            self._in_flight = False
        self._process_next()

"""Events published by the connection manager and the channel that carries them.

The connection manager is the only producer and the tracker's dispatcher
thread is the only consumer, so the channel is a thin wrapper over a
``Queue``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from queue import Empty, Queue

_logger = logging.getLogger(__name__)
if not _logger.handlers:
    _logger.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class DiscoveredDevice:
    device_id: str
    name: str
    rssi: int | None = None


@dataclass(frozen=True)
class DeviceConnected:
    device_id: str


@dataclass(frozen=True)
class DeviceDisconnected:
    device_id: str | None
    at: float


@dataclass(frozen=True)
class OrientationChanged:
    face: int


@dataclass(frozen=True)
class BatteryLevelChanged:
    percent: int


@dataclass(frozen=True)
class DevicesDiscovered:
    devices: tuple[DiscoveredDevice, ...] = field(default_factory=tuple)


class EventChannel:
    """Single-consumer event queue between the connection manager and the tracker."""

    def __init__(self) -> None:
        self._queue: Queue = Queue()

    def publish(self, event) -> None:
        self._queue.put_nowait(event)
        _logger.debug("Published %r", event)

    def get(self, timeout: float | None = None):
        """Return the next event, or None if nothing arrived within timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def drain(self) -> list:
        """Return every pending event without blocking."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except Empty:
                return events

    def __len__(self) -> int:
        return self._queue.qsize()

"""Timer scheduling used for reconnect backoff and notification spacing.

Components never sleep or create timers themselves; they ask a scheduler to
run a callback after a delay. Tests swap in a manual scheduler that advances
virtual time.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle returned by :meth:`ThreadingScheduler.call_later`."""

    def __init__(self, timer: threading.Timer, scheduler: "ThreadingScheduler"):
        self._timer = timer
        self._scheduler = scheduler

    def cancel(self) -> None:
        self._timer.cancel()
        self._scheduler._forget(self)


class ThreadingScheduler:
    """Run callbacks after a delay on daemon timer threads."""

    def __init__(self, name: str = "scheduler"):
        self._name = name
        self._lock = threading.Lock()
        self._handles: set[TimerHandle] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        holder: list[TimerHandle] = []

        def _run() -> None:
            if holder:
                self._forget(holder[0])
            try:
                callback()
            except Exception:
                logger.exception("Scheduled callback %r failed", callback)

        timer = threading.Timer(max(0.0, delay), _run)
        timer.daemon = True
        timer.name = f"{self._name}-timer"
        handle = TimerHandle(timer, self)
        holder.append(handle)
        with self._lock:
            self._handles.add(handle)
        timer.start()
        return handle

    def _forget(self, handle: TimerHandle) -> None:
        with self._lock:
            self._handles.discard(handle)

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle._timer.cancel()
        if handles:
            logger.debug("Cancelled %d pending timer(s) on %s", len(handles), self._name)

"""Turns cube orientation changes into TimeTagger entries.

Each mapped face that comes up opens a session: a zero-length entry is sent
right away so TimeTagger shows the running activity, and the entry is
finalized when the face changes again or tracking is stopped. Flips shorter
than the minimum tracking duration are hidden again. Entries that cannot be
sent are buffered in memory and replayed when the server is reachable again.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from errors import ConflictStale, RemoteRejected, RemoteUnreachable
from settings import (
    LOOKBACK_SECONDS,
    MIN_TRACKING_SECONDS,
    MODIFY_GAP_MAX_SECONDS,
    MODIFY_GAP_MIN_SECONDS,
)
from timetagger_client import TimeEntry

logger = logging.getLogger(__name__)

ACTIVITY_KEY_LENGTH = 8
ACTIVITY_KEY_ALPHABET = string.ascii_letters + string.digits
UNTRACKED_FACE = 0


@dataclass(frozen=True)
class TrackedSession:
    activity_key: str
    start_time: int
    current_page: int
    description: str


class SessionListener:
    """Receives session start/stop; the status presenter overrides these."""

    def session_started(self, description: str) -> None:
        pass

    def session_stopped(self) -> None:
        pass


def generate_activity_key(length: int = ACTIVITY_KEY_LENGTH) -> str:
    return "".join(secrets.choice(ACTIVITY_KEY_ALPHABET) for _ in range(length))


def resolve_final_bounds(
    start_time: int,
    now: int,
    existing: TimeEntry | None,
    modify_gap: tuple[int, int] = (MODIFY_GAP_MIN_SECONDS, MODIFY_GAP_MAX_SECONDS),
) -> tuple[int, int]:
    """
    Decide the final ``(t1, t2)`` of a session given the remote copy, if any.

    The remote start wins when it disagrees with ours or when the remote end
    is not a plausible "still live" distance from now. In that case the
    remote end is kept too, unless the remote entry is still zero-length.

    Raises:
        ConflictStale: the remote copy was hidden by someone else.
    """
    if existing is None:
        return start_time, now
    if existing.hidden:
        raise ConflictStale(f"Entry {existing.key} is hidden")

    gap_min, gap_max = modify_gap
    gap = now - existing.t2
    if existing.t1 != start_time or gap < gap_min or gap > gap_max:
        end = existing.t2 if existing.t2 != existing.t1 else now
        return existing.t1, end
    return start_time, now


def _format_duration(seconds: int) -> str:
    minutes, seconds = divmod(max(0, seconds), 60)
    return f"{minutes}m {seconds}s"


class TrackingEngine:
    """Owns the open session and the buffer of entries awaiting resend."""

    def __init__(
        self,
        client,
        page_descriptions: dict[int, str],
        notifier,
        listener: SessionListener | None = None,
        clock: Callable[[], float] = time.time,
        executor=None,
        min_tracking_seconds: int = MIN_TRACKING_SECONDS,
        modify_gap: tuple[int, int] = (MODIFY_GAP_MIN_SECONDS, MODIFY_GAP_MAX_SECONDS),
        lookback_seconds: int = LOOKBACK_SECONDS,
    ):
        self._client = client
        self._page_descriptions = dict(page_descriptions)
        self._notifier = notifier
        self._listener = listener or SessionListener()
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="tracking")
        self.min_tracking_seconds = min_tracking_seconds
        self.modify_gap = modify_gap
        self.lookback_seconds = lookback_seconds

        self._lock = threading.Lock()
        self._session: TrackedSession | None = None
        self._last_face = UNTRACKED_FACE
        self._buffer: deque[TimeEntry] = deque()
        self._processing = False
        self._pending_face: int | None = None

    @property
    def current_session(self) -> TrackedSession | None:
        return self._session

    @property
    def last_face(self) -> int:
        return self._last_face

    @property
    def buffered_entries(self) -> tuple[TimeEntry, ...]:
        with self._lock:
            return tuple(self._buffer)

    def description_for(self, face: int) -> str | None:
        return self._page_descriptions.get(face) or None

    def snapshot(self) -> dict:
        with self._lock:
            session = self._session
            return {
                "tracking": session is not None,
                "activity": session.description if session else None,
                "page": session.current_page if session else None,
                "start_time": session.start_time if session else None,
                "last_face": self._last_face,
                "buffered": len(self._buffer),
            }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_device_connected(self) -> None:
        logger.info("Cube connected")

    def on_device_disconnected(self) -> None:
        # The session stays open; entries are buffered until the link is back
        logger.info("Cube disconnected; keeping current session open")

    def on_orientation_changed(self, face: int) -> None:
        """
        Handle a face change.

        Changes arriving while a previous one is still being processed are
        deferred; only the most recent of them is handled afterwards.
        """
        with self._lock:
            if self._processing:
                logger.info("Page change already in progress, deferring face %d", face)
                self._pending_face = face
                return
            self._processing = True

        while face is not None:
            try:
                self._handle_page_change(face)
            except Exception:
                logger.exception("Error handling page change to face %d", face)
            with self._lock:
                face, self._pending_face = self._pending_face, None
                if face is None:
                    self._processing = False

    def on_connectivity_restored(self) -> None:
        self._executor.submit(self.drain_buffer)

    def stop_tracking(self) -> bool:
        """
        Stop the current session.

        The session is cleared and the listener told immediately; its final
        entry is sent in the background. Returns False when nothing was being
        tracked.
        """
        with self._lock:
            session = self._session
            self._session = None
        if session is None:
            return False
        logger.info("Stop requested for: %s", session.description)
        # A new session may open before the background close finishes
        self._listener.session_stopped()
        self._executor.submit(self._close_session_safely, session)
        return True

    def drain_buffer(self) -> int:
        """Resend every buffered entry once; returns how many were accepted."""
        with self._lock:
            entries = list(self._buffer)
            self._buffer.clear()
        if not entries:
            return 0

        logger.info("Sending %d buffered event(s)", len(entries))
        sent = 0
        for entry in entries:
            try:
                self._client.submit_entry(entry)
            except RemoteUnreachable as exc:
                logger.warning("Failed to send buffered event %s: %s", entry.label, exc)
                with self._lock:
                    self._buffer.append(entry)
            except RemoteRejected:
                logger.warning("Buffered event rejected, dropping: %s", entry.label)
            else:
                logger.info("Sent buffered event: %s", entry.label)
                sent += 1
        return sent

    def shutdown(self, wait: bool = True) -> None:
        """Close any open session and wait for pending sends."""
        self.stop_tracking()
        self._executor.shutdown(wait=wait)
        if self._buffer:
            logger.warning("Shutting down with %d unsent buffered event(s)", len(self._buffer))

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    def _handle_page_change(self, face: int) -> None:
        if face == self._last_face:
            logger.debug("Face %d unchanged, ignoring", face)
            return

        with self._lock:
            session = self._session
            self._session = None
        if session is not None:
            # Closing must finish before a new session may open
            self._close_session(session)

        self._last_face = face
        description = self.description_for(face)
        if description:
            logger.info("Changed page to: %s", description)
            self._open_session(face, description)
        elif face != UNTRACKED_FACE:
            logger.info("Page %d is not defined or description is empty", face)

    def _open_session(self, face: int, description: str) -> None:
        now = int(self._clock())
        session = TrackedSession(generate_activity_key(), now, face, description)
        with self._lock:
            self._session = session
        logger.info("Started tracking for: %s", description)
        self._listener.session_started(description)

        entry = TimeEntry(session.activity_key, now, now, description, created_at=now)
        self._send(entry, ("Event Accepted", f"Started tracking: {description}", "start"))

    def _close_session_safely(self, session: TrackedSession) -> None:
        try:
            self._close_session(session, notify_listener=False)
        except Exception:
            logger.exception("Error closing session %s", session.activity_key)

    def _close_session(self, session: TrackedSession, notify_listener: bool = True) -> None:
        now = int(self._clock())
        duration = now - session.start_time
        logger.info("Stopped tracking for: %s (%ds)", session.description, duration)
        try:
            if duration < self.min_tracking_seconds:
                entry = TimeEntry(
                    session.activity_key,
                    session.start_time,
                    now,
                    session.description,
                    hidden=True,
                    created_at=now,
                )
                self._send(
                    entry,
                    (
                        "Event Cancelled",
                        f"Duration was less than {self.min_tracking_seconds} seconds",
                        "cancel",
                    ),
                )
            else:
                self._finish_session(session, now)
        finally:
            if notify_listener:
                self._listener.session_stopped()

    def _finish_session(self, session: TrackedSession, now: int) -> None:
        try:
            existing = self._client.fetch_entry(
                session.activity_key, session.start_time - self.lookback_seconds, now
            )
        except RemoteUnreachable as exc:
            logger.warning("Could not fetch existing event for %s: %s", session.description, exc)
            existing = None

        try:
            t1, t2 = resolve_final_bounds(session.start_time, now, existing, self.modify_gap)
        except ConflictStale:
            logger.info("Event is hidden, skipping update")
            return

        if (t1, t2) != (session.start_time, now):
            logger.info("Modifying event %s to [%d, %d]", session.activity_key, t1, t2)
        entry = TimeEntry(session.activity_key, t1, t2, session.description, created_at=now)
        self._send(
            entry,
            (
                "Event Accepted",
                f"Finished tracking: {session.description} ({_format_duration(t2 - t1)})",
                "finish",
            ),
        )

    def _send(self, entry: TimeEntry, accepted_notification: tuple[str, str, str]) -> bool:
        try:
            self._client.submit_entry(entry)
        except RemoteUnreachable as exc:
            logger.warning("Error sending event %s - will buffer: %s", entry.key, exc)
            with self._lock:
                self._buffer.append(entry)
            self._notifier.enqueue(
                "Event Buffered", f"Event: {entry.label} has been buffered.", "buffer"
            )
            return False
        except RemoteRejected:
            logger.warning("Event rejected for: %s", entry.label)
            return False
        self._notifier.enqueue(*accepted_notification)
        return True

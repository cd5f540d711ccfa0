"""Exceptions shared by the cube tracker components."""


class CubeTrackerError(Exception):
    """Base class for cube tracker errors."""


class ConfigurationError(CubeTrackerError):
    """The user configuration is missing or invalid."""


class LinkUnavailable(CubeTrackerError):
    """The Bluetooth adapter is powered off, missing or not authorized."""


class ConnectFailed(CubeTrackerError):
    """A connection attempt to the cube failed; retried under backoff."""


class RemoteUnreachable(CubeTrackerError):
    """The TimeTagger server could not be reached or answered garbage."""


class RemoteRejected(CubeTrackerError):
    """The TimeTagger server answered but did not accept the entry."""

    def __init__(self, key: str, response=None):
        super().__init__(f"Entry {key} was not accepted")
        self.key = key
        self.response = response


class ConflictStale(CubeTrackerError):
    """The remote copy of a session was hidden by someone else; leave it alone."""

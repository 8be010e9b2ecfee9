"""Exception types raised by the tracker.

Transport-level failures are raised only at the transport boundary; the
session turns them into state changes and listener notifications.
"""


class TrackerError(Exception):
    """Base class for every tracker error."""


class InvalidConfig(TrackerError, ValueError):
    """Bad host/port input, detected before any connection attempt."""


class TransportError(TrackerError):
    pass


class ConnectError(TransportError):
    """The connection could not be established."""


class UnresolvableHost(ConnectError):
    pass


class ConnectionRefused(ConnectError):
    pass


class ConnectTimeout(ConnectError):
    pass


class WriteError(TransportError):
    """A single record could not be written to the connection."""


class CloseError(TransportError):
    """The connection was already closed or could not be closed cleanly."""

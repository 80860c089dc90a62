"""Exceptions raised by daemontop."""


class DaemontopError(Exception):
    """Base class for all daemontop errors."""


class ChannelError(DaemontopError):
    """Error related to the daemon channel."""


class ChannelClosedError(ChannelError):
    """Raised when sending while no transport is open."""


class ProtocolError(ChannelError):
    """Raised when an inbound envelope cannot be understood."""


class ConfigurationError(DaemontopError):
    """Raised when the dashboard configuration is missing or invalid."""

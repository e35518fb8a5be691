"""Relay exceptions."""


class RelayError(Exception):
    """Base exception for relay errors."""

    pass


class ConnectivityError(RelayError):
    """Raised when the relay server cannot be probed or the channel cannot open."""

    pass


class ValidationError(RelayError):
    """Raised when a command is missing required parameters."""

    pass


class UnknownMethodError(RelayError):
    """Raised when a command names a method the router does not expose."""

    pass


class TargetHostError(RelayError):
    """Raised when the target host rejects an attach, command or detach."""

    pass


class AttachAbortedError(RelayError):
    """Raised when an attach is torn down while it is still in progress."""

    pass


class ChannelClosedError(RelayError):
    """Raised when a call is made on, or outlived by, a closed channel."""

    pass


class CallTimeoutError(RelayError):
    """Raised when a relay-initiated call passes its deadline."""

    pass

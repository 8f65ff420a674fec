"""Exceptions raised by the p2pchat core.

Every failure here is scoped to a single peer or a single message; none of
them is meant to bring down the session.
"""


class P2PChatError(Exception):
    """Base class for p2pchat errors."""

    pass


class ProtocolError(P2PChatError):
    """Raised when a signal or data-channel envelope cannot be decoded."""

    pass


class ChannelUnavailableError(P2PChatError):
    """Raised when sending on a data channel that is not open.

    Attributes:
        peer_id: The remote peer the channel belongs to.
    """

    def __init__(self, peer_id: str, message: str | None = None):
        super().__init__(message or f"No open data channel to {peer_id}")
        self.peer_id = peer_id


class DeliveryFailedError(P2PChatError):
    """Raised when a channel could not be (re-)established within the wait bound.

    Attributes:
        peer_id: The remote peer that could not be reached.
    """

    def __init__(self, peer_id: str, message: str | None = None):
        super().__init__(message or f"Failed to establish data channel with {peer_id}")
        self.peer_id = peer_id


class TransferAbortedError(P2PChatError):
    """Raised when a file transfer stops because its channel went away."""

    pass


class FileTooLargeError(P2PChatError):
    """Raised when a file exceeds the configured transfer size limit."""

    pass


class GroupError(P2PChatError):
    """Raised for group operations on unknown or empty groups."""

    pass

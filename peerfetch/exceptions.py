"""Exception types raised by peerfetch."""
from __future__ import annotations


class PeerFetchError(Exception):
    """Base exception type for all peerfetch errors."""

    pass


class ConfigError(PeerFetchError):
    """Client configuration is missing or invalid."""

    pass


class ControlConnectionError(PeerFetchError, ConnectionError):
    """Error connecting to the signaling service."""

    pass


class ControlAuthenticationError(ControlConnectionError):
    """The signaling service rejected the authentication token."""

    pass


class ControlChannelClosedError(ControlConnectionError):
    """The control channel was closed and cannot be used."""

    pass


class NotConnectedError(PeerFetchError):
    """Operation requires a connected client."""

    pass


class SecurityError(PeerFetchError):
    """Target URL was blocked by the security policy."""

    pass


class NoPeersError(PeerFetchError):
    """No exit node is available to serve the request."""

    pass


class FetchTimeoutError(PeerFetchError, TimeoutError):
    """A matching, handshake, or response window elapsed."""

    pass


class TunnelError(PeerFetchError):
    """Failure of the peer-to-peer tunnel."""

    pass


class DataChannelClosedError(TunnelError):
    """The data channel closed underneath the session.

    This is expected while a session is tearing down its tunnel.
    """

    pass


class RemoteError(PeerFetchError):
    """The exit node failed to fetch the target URL.

    Args:
        message: Error message reported by the exit node.
        status: Status code reported by the exit node.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

"""Exception types for session establishment errors."""
from __future__ import annotations


class PeerLinkError(Exception):
    """Base exception type for all PeerLink errors."""

    pass


class SignalingStoreError(PeerLinkError):
    """Error reading, writing, or subscribing to the signaling store."""

    pass


class SessionNotFoundError(SignalingStoreError):
    """Session record with the requested identifier does not exist."""

    pass


class DescriptionConflictError(SignalingStoreError):
    """Offer or answer was already written or was written out of order."""

    pass


class SignalingDecodeError(SignalingStoreError):
    """Record read from the signaling store cannot be decoded."""

    pass


class ChannelNotOpenError(PeerLinkError):
    """Data channel is not open."""

    pass


class TransportFailureError(PeerLinkError):
    """Transport reported a failed connection."""

    pass


class SessionStateError(PeerLinkError):
    """Command is not valid in the current signaling phase."""

    pass

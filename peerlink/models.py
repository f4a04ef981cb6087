"""Records exchanged through the signaling store and held by sessions.

Session records and candidates are encoded as JSON objects with the same
camelCase keys browsers use for `RTCSessionDescription` and
`RTCIceCandidate.toJSON()`, so records written by this package can be read
by other clients of the same store.
"""
from __future__ import annotations

import dataclasses
import datetime
import enum
import json
import time
from typing import Any
from typing import Iterable
from typing import Iterator
from typing import Sequence

from peerlink.exceptions import SignalingDecodeError


class Role(enum.Enum):
    """Role of a participant in a session."""

    initiator = 'initiator'
    """Creates the session and writes the offer."""
    responder = 'responder'
    """Joins an existing session and writes the answer."""

    @property
    def collection(self) -> str:
        """Name of the candidate collection this role appends to."""
        return f'{self.value}Candidates'

    @property
    def peer(self) -> Role:
        """The opposite role."""
        return Role.responder if self is Role.initiator else Role.initiator


class SignalingPhase(enum.Enum):
    """Phases of the session establishment state machine."""

    idle = 'idle'
    configuring = 'configuring'
    offering = 'offering'
    awaiting_offer = 'awaiting-offer'
    negotiating = 'negotiating'
    connected = 'connected'
    closed = 'closed'
    failed = 'failed'

    @property
    def terminal(self) -> bool:
        """If no further transitions are possible from this phase."""
        return self in (SignalingPhase.closed, SignalingPhase.failed)


class Sender(enum.Enum):
    """Origin of a message in the message log."""

    self = 'self'
    peer = 'peer'


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Opaque session description produced by the transport.

    Attributes:
        type: Either `#!python 'offer'` or `#!python 'answer'`.
        sdp: Description payload.
    """

    type: str
    sdp: str

    def to_dict(self) -> dict[str, str]:
        """Encode as a JSON-compatible dictionary."""
        return {'type': self.type, 'sdp': self.sdp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDescription:
        """Decode from a dictionary.

        Raises:
            SignalingDecodeError: If `data` is missing the type or sdp keys.
        """
        try:
            return cls(type=str(data['type']), sdp=str(data['sdp']))
        except (KeyError, TypeError) as e:
            raise SignalingDecodeError(
                f'Invalid session description: {data!r}.',
            ) from e


@dataclasses.dataclass(frozen=True)
class Candidate:
    """Opaque connectivity candidate discovered by the transport.

    Attributes:
        candidate: Candidate attribute line (`candidate:...`).
        sdp_mid: Media stream identification tag the candidate belongs to.
        sdp_mline_index: Index of the media description the candidate
            belongs to.
        username_fragment: ICE username fragment, if known.
    """

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    username_fragment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Encode as a JSON-compatible dictionary."""
        return {
            'candidate': self.candidate,
            'sdpMid': self.sdp_mid,
            'sdpMLineIndex': self.sdp_mline_index,
            'usernameFragment': self.username_fragment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Candidate:
        """Decode from a dictionary.

        Raises:
            SignalingDecodeError: If `data` does not contain a candidate.
        """
        try:
            return cls(
                candidate=str(data['candidate']),
                sdp_mid=data.get('sdpMid'),
                sdp_mline_index=data.get('sdpMLineIndex'),
                username_fragment=data.get('usernameFragment'),
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise SignalingDecodeError(
                f'Invalid candidate record: {data!r}.',
            ) from e


@dataclasses.dataclass(frozen=True)
class Session:
    """Shared signaling record for one session.

    Attributes:
        session_id: Identifier generated by the store on creation.
        created_at: ISO-8601 UTC timestamp of creation.
        offer: Description written once by the initiator.
        answer: Description written once by the responder.
    """

    session_id: str
    created_at: str
    offer: SessionDescription | None = None
    answer: SessionDescription | None = None

    def to_dict(self) -> dict[str, Any]:
        """Encode as a JSON-compatible dictionary.

        The session identifier is the record key so it is not included.
        """
        data: dict[str, Any] = {'createdAt': self.created_at}
        if self.offer is not None:
            data['offer'] = self.offer.to_dict()
        if self.answer is not None:
            data['answer'] = self.answer.to_dict()
        return data

    @classmethod
    def from_dict(cls, session_id: str, data: dict[str, Any]) -> Session:
        """Decode from a dictionary.

        Raises:
            SignalingDecodeError: If the record is malformed.
        """
        if not isinstance(data, dict) or 'createdAt' not in data:
            raise SignalingDecodeError(
                f'Invalid session record for {session_id}: {data!r}.',
            )
        offer = data.get('offer')
        answer = data.get('answer')
        return cls(
            session_id=session_id,
            created_at=str(data['createdAt']),
            offer=(
                None if offer is None else SessionDescription.from_dict(offer)
            ),
            answer=(
                None
                if answer is None
                else SessionDescription.from_dict(answer)
            ),
        )


def utc_timestamp() -> str:
    """Return the current time as an ISO-8601 UTC string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclasses.dataclass(frozen=True)
class EndpointDescriptor:
    """Relay or reflection endpoint used for connectivity checks.

    Attributes:
        urls: Endpoint URIs (e.g., `stun:host:port` or `turn:host:port`).
        username: Optional credential username.
        credential: Optional credential secret.
        ttl: Optional lifetime in seconds of the credential.
    """

    urls: tuple[str, ...]
    username: str | None = None
    credential: str | None = dataclasses.field(default=None, repr=False)
    ttl: int | None = None

    @property
    def is_relay(self) -> bool:
        """If this endpoint relays traffic (TURN) rather than reflects it."""
        return any(url.startswith(('turn:', 'turns:')) for url in self.urls)

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        ttl: int | None = None,
    ) -> EndpointDescriptor:
        """Decode an ICE server entry as returned by an issuing service.

        Raises:
            ValueError: If the entry does not contain any URIs.
        """
        urls = data.get('urls', data.get('url'))
        if isinstance(urls, str):
            urls = (urls,)
        if not urls or not all(isinstance(url, str) for url in urls):
            raise ValueError(f'Endpoint entry has no valid urls: {data!r}.')
        return cls(
            urls=tuple(urls),
            username=data.get('username'),
            credential=data.get('credential'),
            ttl=ttl,
        )


@dataclasses.dataclass(frozen=True)
class EndpointConfig:
    """Ordered, immutable set of endpoints for one establishment attempt."""

    endpoints: tuple[EndpointDescriptor, ...] = ()

    @classmethod
    def from_urls(cls, urls: Iterable[str]) -> EndpointConfig:
        """Create a config of credential-less endpoints, one per URI."""
        return cls(tuple(EndpointDescriptor(urls=(url,)) for url in urls))

    def __iter__(self) -> Iterator[EndpointDescriptor]:
        return iter(self.endpoints)

    def __len__(self) -> int:
        return len(self.endpoints)


@dataclasses.dataclass(frozen=True)
class Message:
    """Entry in the message log of a channel.

    Attributes:
        text: Message contents.
        sender: Which side sent the message.
        timestamp: Unix time the message was sent or received.
    """

    text: str
    sender: Sender
    timestamp: float = dataclasses.field(default_factory=time.time)


def encode_record(data: dict[str, Any]) -> str:
    """Encode a record dictionary as a JSON string."""
    return json.dumps(data, separators=(',', ':'))


def decode_record(message: str | bytes) -> dict[str, Any]:
    """Decode a JSON string into a record dictionary.

    Raises:
        SignalingDecodeError: If the string is not a JSON object.
    """
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SignalingDecodeError('Failed to load record as JSON.') from e
    if not isinstance(data, dict):
        raise SignalingDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )
    return data


def decode_candidates(messages: Sequence[str | bytes]) -> list[Candidate]:
    """Decode a sequence of JSON candidate records, preserving order."""
    return [Candidate.from_dict(decode_record(m)) for m in messages]

"""Fake transports for testing the session state machine.

Two [`FakeTransport`][testing.transport.FakeTransport] instances created by
the same [`FakeNetwork`][testing.transport.FakeNetwork] are linked: once
both sides have committed a local and a remote description, the network
delivers the initiator's channel to the responder and opens it on both
sides. All callbacks are scheduled on the event loop rather than invoked
inline, like a real transport.
"""
from __future__ import annotations

import asyncio
from typing import Any
from typing import Callable
from typing import Sequence

from peerlink.models import Candidate
from peerlink.models import EndpointConfig
from peerlink.models import SessionDescription


def _schedule(callbacks: list[Callable[..., None]], *args: Any) -> None:
    loop = asyncio.get_running_loop()
    for callback in list(callbacks):
        loop.call_soon(callback, *args)


class FakeChannel:
    """Fake data channel linked to a peer channel."""

    def __init__(self, label: str, *, ordered: bool = True) -> None:
        self.label = label
        self.ordered = ordered
        self.peer: FakeChannel | None = None
        self.sent: list[str] = []
        self._state = 'connecting'
        self._open_callbacks: list[Callable[[], None]] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._error_callbacks: list[Callable[[Exception], None]] = []
        self._message_callbacks: list[Callable[[str], None]] = []

    @property
    def ready_state(self) -> str:
        return self._state

    def send(self, text: str) -> None:
        if self._state != 'open':
            raise RuntimeError(f'Channel is {self._state}.')
        self.sent.append(text)
        if self.peer is not None:
            self.peer.receive(text)

    def close(self) -> None:
        if self._state == 'closed':
            return
        self._state = 'closed'
        if self.peer is not None:
            self.peer.peer_closed()

    def on_open(self, callback: Callable[[], None]) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        self._error_callbacks.append(callback)

    def on_message(self, callback: Callable[[str], None]) -> None:
        self._message_callbacks.append(callback)

    def open(self) -> None:
        """Mark the channel open and notify listeners."""
        if self._state != 'connecting':
            return
        self._state = 'open'
        _schedule(self._open_callbacks)

    def receive(self, text: str) -> None:
        """Deliver a message from the peer."""
        _schedule(self._message_callbacks, text)

    def peer_closed(self) -> None:
        """Close the channel because the peer closed its end."""
        if self._state == 'closed':
            return
        self._state = 'closed'
        _schedule(self._close_callbacks)


class FakeTransport:
    """Fake transport which records the operations applied to it.

    Args:
        network: Network linking this transport to its peer.
        local_candidates: Candidates announced after the local description
            is committed.
    """

    def __init__(
        self,
        network: FakeNetwork,
        local_candidates: Sequence[Candidate] = (),
    ) -> None:
        self.network = network
        self.local_candidates = tuple(local_candidates)
        self.endpoints: EndpointConfig | None = None
        self.local_description: SessionDescription | None = None
        self.remote_candidates: list[Candidate] = []
        self.channel: FakeChannel | None = None
        self.connection_state = 'new'
        self.closed = False
        self._remote_description: SessionDescription | None = None
        self._candidate_callbacks: list[Callable[[Candidate], None]] = []
        self._channel_callbacks: list[Callable[[FakeChannel], None]] = []
        self._state_callbacks: list[Callable[[str], None]] = []

    @property
    def remote_description(self) -> SessionDescription | None:
        return self._remote_description

    @property
    def ready(self) -> bool:
        """If both descriptions have been committed."""
        return (
            self.local_description is not None
            and self._remote_description is not None
        )

    def configure(self, endpoints: EndpointConfig) -> None:
        if self.endpoints is not None:
            raise RuntimeError('Transport has already been configured.')
        self.endpoints = endpoints

    def create_channel(
        self,
        label: str,
        *,
        ordered: bool = True,
    ) -> FakeChannel:
        self.channel = FakeChannel(label, ordered=ordered)
        return self.channel

    async def create_offer(self) -> SessionDescription:
        return SessionDescription(type='offer', sdp=f'offer-{id(self)}')

    async def create_answer(self) -> SessionDescription:
        if self._remote_description is None:
            raise RuntimeError('Cannot answer without a remote description.')
        return SessionDescription(type='answer', sdp=f'answer-{id(self)}')

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> SessionDescription:
        self.local_description = description
        for candidate in self.local_candidates:
            _schedule(self._candidate_callbacks, candidate)
        self.network.check()
        return description

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        self._remote_description = description
        self.network.check()

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        if self._remote_description is None:
            raise RuntimeError(
                'Candidate added before the remote description.',
            )
        self.remote_candidates.append(candidate)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.channel is not None:
            self.channel.close()
        self.set_connection_state('closed')

    def on_local_candidate(
        self,
        callback: Callable[[Candidate], None],
    ) -> None:
        self._candidate_callbacks.append(callback)

    def on_channel(self, callback: Callable[[FakeChannel], None]) -> None:
        self._channel_callbacks.append(callback)

    def on_connection_state(self, callback: Callable[[str], None]) -> None:
        self._state_callbacks.append(callback)

    def set_connection_state(self, state: str) -> None:
        """Change the connection state and notify listeners."""
        self.connection_state = state
        _schedule(self._state_callbacks, state)

    def fail(self) -> None:
        """Simulate a failed connection."""
        self.set_connection_state('failed')

    def deliver_channel(self, channel: FakeChannel) -> None:
        """Deliver a channel opened by the peer."""
        self.channel = channel
        _schedule(self._channel_callbacks, channel)


class FakeNetwork:
    """Links the first two transports it creates.

    Example:
        ```python
        network = FakeNetwork()
        initiator = SessionStateMachine(store, creds, network.factory())
        responder = SessionStateMachine(store, creds, network.factory())
        ```
    """

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.connected = False

    def factory(
        self,
        local_candidates: Sequence[Candidate] = (),
    ) -> Callable[[], FakeTransport]:
        """Create a transport factory for one participant."""

        def _create() -> FakeTransport:
            transport = FakeTransport(self, local_candidates)
            self.transports.append(transport)
            return transport

        return _create

    def check(self) -> None:
        """Connect the transports once both have both descriptions."""
        if self.connected or len(self.transports) < 2:
            return
        first, second = self.transports[:2]
        if not (first.ready and second.ready):
            return

        offerer, answerer = (
            (first, second)
            if first.channel is not None
            else (second, first)
        )
        assert offerer.channel is not None
        self.connected = True

        remote = FakeChannel(offerer.channel.label)
        remote.peer = offerer.channel
        offerer.channel.peer = remote

        for transport in (offerer, answerer):
            transport.set_connection_state('connecting')
            transport.set_connection_state('connected')
        offerer.channel.open()
        remote.open()
        answerer.deliver_channel(remote)

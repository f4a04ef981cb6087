"""Transport capability performing network traversal and channel transport.

The session state machine only depends on the
[`Transport`][peerlink.transport.Transport] and
[`TransportChannel`][peerlink.transport.TransportChannel] protocols.
[`AiortcTransport`][peerlink.transport.AiortcTransport] implements them
with [aiortc](https://aiortc.readthedocs.io/en/latest/){target=_blank}, an
asyncio WebRTC implementation.
"""
from __future__ import annotations

import logging
import warnings
from typing import Callable
from typing import Protocol
from typing import runtime_checkable

try:
    from aiortc import RTCConfiguration
    from aiortc import RTCDataChannel
    from aiortc import RTCIceServer
    from aiortc import RTCPeerConnection
    from aiortc import RTCSessionDescription
    from aiortc.sdp import candidate_from_sdp
    from cryptography.utils import CryptographyDeprecationWarning

    warnings.simplefilter('ignore', CryptographyDeprecationWarning)
except ImportError as e:  # pragma: no cover
    warnings.warn(
        f'{e}. To enable WebRTC transports, install peerlink with '
        '"pip install peerlink[aiortc]".',
        stacklevel=2,
    )

from peerlink.models import Candidate
from peerlink.models import EndpointConfig
from peerlink.models import SessionDescription

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[Candidate], None]
StateCallback = Callable[[str], None]
MessageCallback = Callable[[str], None]
EventCallback = Callable[[], None]


@runtime_checkable
class TransportChannel(Protocol):
    """Bidirectional data channel provided by a transport."""

    @property
    def label(self) -> str:
        """Channel label."""
        ...

    @property
    def ready_state(self) -> str:
        """One of `connecting`, `open`, `closing`, or `closed`."""
        ...

    def send(self, text: str) -> None:
        """Send a text message over the channel."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...

    def on_open(self, callback: EventCallback) -> None:
        """Register a callback for when the channel opens."""
        ...

    def on_close(self, callback: EventCallback) -> None:
        """Register a callback for when the channel closes."""
        ...

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        """Register a callback for channel errors."""
        ...

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for incoming messages."""
        ...


ChannelCallback = Callable[[TransportChannel], None]


@runtime_checkable
class Transport(Protocol):
    """Opaque capability establishing the peer connection.

    Descriptions and candidates are exchanged verbatim. Connection state
    values follow the WebRTC `RTCPeerConnectionState` names (`new`,
    `connecting`, `connected`, `disconnected`, `failed`, `closed`).
    """

    @property
    def remote_description(self) -> SessionDescription | None:
        """Remote description if one has been set."""
        ...

    def configure(self, endpoints: EndpointConfig) -> None:
        """Configure the endpoints used for connectivity checks.

        Must be called once before any other operation.
        """
        ...

    def create_channel(
        self,
        label: str,
        *,
        ordered: bool = True,
    ) -> TransportChannel:
        """Create a local data channel."""
        ...

    async def create_offer(self) -> SessionDescription:
        """Generate an offer description."""
        ...

    async def create_answer(self) -> SessionDescription:
        """Generate an answer description."""
        ...

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> SessionDescription:
        """Commit the local description.

        Returns:
            The committed local description which should be sent to the
            peer. Transports may augment the description, e.g., with
            gathered candidates.
        """
        ...

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Commit the description received from the peer."""
        ...

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate received from the peer."""
        ...

    async def close(self) -> None:
        """Close the transport and all of its channels."""
        ...

    def on_local_candidate(self, callback: CandidateCallback) -> None:
        """Register a callback for locally discovered candidates."""
        ...

    def on_channel(self, callback: ChannelCallback) -> None:
        """Register a callback for channels opened by the peer."""
        ...

    def on_connection_state(self, callback: StateCallback) -> None:
        """Register a callback for connection state changes."""
        ...


class AiortcChannel:
    """Adapter of an aiortc `RTCDataChannel`."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(label={self.label}, '
            f'state={self.ready_state})'
        )

    @property
    def label(self) -> str:
        """Channel label."""
        return self._channel.label

    @property
    def ready_state(self) -> str:
        """Current state of the channel."""
        return self._channel.readyState

    def send(self, text: str) -> None:
        """Send a text message over the channel."""
        self._channel.send(text)

    def close(self) -> None:
        """Close the channel."""
        self._channel.close()

    def on_open(self, callback: EventCallback) -> None:
        """Register a callback for when the channel opens."""
        self._channel.on('open', callback)

    def on_close(self, callback: EventCallback) -> None:
        """Register a callback for when the channel closes."""
        self._channel.on('close', callback)

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        """Register a callback for channel errors."""
        self._channel.on('error', callback)

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for incoming messages."""

        def _on_message(message: str | bytes) -> None:
            if isinstance(message, bytes):
                message = message.decode()
            callback(message)

        self._channel.on('message', _on_message)


class AiortcTransport:
    """Transport implemented with an aiortc `RTCPeerConnection`.

    Note:
        aiortc gathers all candidates while the local description is set and
        embeds them in the committed description, so this transport never
        emits trickled local candidates. Remote candidates trickled by other
        implementations are still applied.
    """

    def __init__(self) -> None:
        self._pc: RTCPeerConnection | None = None
        self._candidate_callbacks: list[CandidateCallback] = []
        self._channel_callbacks: list[ChannelCallback] = []
        self._state_callbacks: list[StateCallback] = []

    def __repr__(self) -> str:
        state = 'unconfigured' if self._pc is None else self.connection_state
        return f'{self.__class__.__name__}(state={state})'

    @property
    def pc(self) -> RTCPeerConnection:
        """Underlying peer connection.

        Raises:
            RuntimeError: If the transport has not been configured.
        """
        if self._pc is None:
            raise RuntimeError(
                'Transport is not configured. Call configure() first.',
            )
        return self._pc

    @property
    def connection_state(self) -> str:
        """Current connection state of the peer connection."""
        return self.pc.connectionState

    @property
    def remote_description(self) -> SessionDescription | None:
        """Remote description if one has been set."""
        if self._pc is None or self._pc.remoteDescription is None:
            return None
        description = self._pc.remoteDescription
        return SessionDescription(type=description.type, sdp=description.sdp)

    def configure(self, endpoints: EndpointConfig) -> None:
        """Create the peer connection using `endpoints` as ICE servers."""
        if self._pc is not None:
            raise RuntimeError('Transport has already been configured.')
        servers = [
            RTCIceServer(
                urls=list(endpoint.urls),
                username=endpoint.username,
                credential=endpoint.credential,
            )
            for endpoint in endpoints
        ]
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))
        logger.info(
            f'Created peer connection with {len(servers)} ICE servers',
        )

        pc = self._pc

        @pc.on('connectionstatechange')
        def _on_connection_state() -> None:
            logger.info(f'Connection state changed: {pc.connectionState}')
            for callback in self._state_callbacks:
                callback(pc.connectionState)

        @pc.on('iceconnectionstatechange')
        def _on_ice_connection_state() -> None:
            logger.debug(
                f'ICE connection state changed: {pc.iceConnectionState}',
            )

        @pc.on('icegatheringstatechange')
        def _on_ice_gathering_state() -> None:
            logger.debug(
                f'ICE gathering state changed: {pc.iceGatheringState}',
            )

        @pc.on('signalingstatechange')
        def _on_signaling_state() -> None:
            logger.debug(f'Signaling state changed: {pc.signalingState}')

        @pc.on('datachannel')
        def _on_datachannel(channel: RTCDataChannel) -> None:
            logger.info(f'Data channel received from peer: {channel.label}')
            wrapped = AiortcChannel(channel)
            for callback in self._channel_callbacks:
                callback(wrapped)

    def create_channel(
        self,
        label: str,
        *,
        ordered: bool = True,
    ) -> AiortcChannel:
        """Create a local data channel."""
        channel = self.pc.createDataChannel(label, ordered=ordered)
        logger.info(f'Data channel created: {label}')
        return AiortcChannel(channel)

    async def create_offer(self) -> SessionDescription:
        """Generate an offer description."""
        offer = await self.pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        """Generate an answer description."""
        answer = await self.pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(
        self,
        description: SessionDescription,
    ) -> SessionDescription:
        """Commit the local description.

        Returns:
            The committed description including all gathered candidates.
        """
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )
        local = self.pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Commit the description received from the peer."""
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )

    async def add_remote_candidate(self, candidate: Candidate) -> None:
        """Apply a candidate received from the peer."""
        line = candidate.candidate
        if line.startswith('candidate:'):
            line = line[len('candidate:') :]
        if not line:
            # An empty candidate marks the end of the peer's candidates.
            return
        ice_candidate = candidate_from_sdp(line)
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self.pc.addIceCandidate(ice_candidate)

    async def close(self) -> None:
        """Close the peer connection."""
        if self._pc is not None:
            await self._pc.close()

    def on_local_candidate(self, callback: CandidateCallback) -> None:
        """Register a callback for locally discovered candidates."""
        self._candidate_callbacks.append(callback)

    def on_channel(self, callback: ChannelCallback) -> None:
        """Register a callback for channels opened by the peer."""
        self._channel_callbacks.append(callback)

    def on_connection_state(self, callback: StateCallback) -> None:
        """Register a callback for connection state changes."""
        self._state_callbacks.append(callback)


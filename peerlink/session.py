"""Signaling-driven session establishment state machine."""
from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Union

from peerlink.channel import ChannelCoordinator
from peerlink.credentials import CredentialProvider
from peerlink.exceptions import PeerLinkError
from peerlink.exceptions import SessionStateError
from peerlink.exceptions import TransportFailureError
from peerlink.models import Candidate
from peerlink.models import Message
from peerlink.models import Role
from peerlink.models import Session
from peerlink.models import SessionDescription
from peerlink.models import SignalingPhase
from peerlink.signaling.protocols import SignalingStore
from peerlink.signaling.protocols import Subscription
from peerlink.transport import AiortcTransport
from peerlink.transport import Transport
from peerlink.transport import TransportChannel
from peerlink.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[SignalingPhase], None]


@dataclasses.dataclass(frozen=True)
class SessionState:
    """Snapshot of the state held by a session state machine.

    Attributes:
        role: Role of this participant or `None` before starting.
        phase: Current signaling phase.
        connection_state: Last connection state reported by the transport.
        channel_state: State of the data channel.
        pending_candidates: Remote candidates buffered until the remote
            description is set, in arrival order.
    """

    role: Role | None
    phase: SignalingPhase
    connection_state: str
    channel_state: str
    pending_candidates: tuple[Candidate, ...]


@dataclasses.dataclass
class _Start:
    role: Role
    session_id: str | None
    future: asyncio.Future[str]


@dataclasses.dataclass
class _SessionChanged:
    session: Session


@dataclasses.dataclass
class _RemoteCandidate:
    candidate: Candidate


@dataclasses.dataclass
class _LocalCandidate:
    candidate: Candidate


@dataclasses.dataclass
class _ChannelReceived:
    channel: TransportChannel


@dataclasses.dataclass
class _ChannelOpened:
    pass


@dataclasses.dataclass
class _ChannelClosed:
    pass


@dataclasses.dataclass
class _ConnectionStateChanged:
    state: str


@dataclasses.dataclass
class _StoreFailed:
    error: BaseException


_Event = Union[
    _Start,
    _SessionChanged,
    _RemoteCandidate,
    _LocalCandidate,
    _ChannelReceived,
    _ChannelOpened,
    _ChannelClosed,
    _ConnectionStateChanged,
    _StoreFailed,
]


class SessionStateMachine:
    """Establish a peer-to-peer channel for one role of one session.

    The two participants rendezvous on a session record in a shared
    [`SignalingStore`][peerlink.signaling.protocols.SignalingStore]. The
    initiator creates the record and writes the offer, the responder reads
    the offer and writes the answer, and both append the candidates their
    transport discovers to their own collection while consuming the other
    participant's collection.

    Store notifications, transport events, and commands are queued and
    handled one at a time by a single dispatcher task in arrival order.
    Events that arrive while a handler is suspended wait in the queue.
    Remote candidates handled before the remote description is set are
    buffered and applied, in order, right after it is set.

    Example:
        ```python
        from peerlink.credentials import StaticCredentialProvider
        from peerlink.session import SessionStateMachine
        from peerlink.signaling.local import LocalSignalingStore

        store = LocalSignalingStore()
        credentials = StaticCredentialProvider()

        initiator = SessionStateMachine(store, credentials)
        responder = SessionStateMachine(store, credentials)

        session_id = await initiator.create()
        await responder.join(session_id)

        await initiator.wait_connected()
        await responder.wait_connected()

        initiator.send('hello')
        message = await responder.channel.recv()
        assert message.text == 'hello'

        await initiator.close()
        await responder.close()
        ```

    Note:
        The class can also be used as an asynchronous context manager which
        calls [`close()`][peerlink.session.SessionStateMachine.close] on
        exit.

    Args:
        store: Signaling store shared with the peer.
        credentials: Provider of the endpoint configuration. It is asked
            once per establishment attempt.
        transport_factory: Callable returning a new, unconfigured transport.
        channel_label: Label of the data channel created by the initiator.
    """

    def __init__(
        self,
        store: SignalingStore,
        credentials: CredentialProvider,
        transport_factory: Callable[[], Transport] = AiortcTransport,
        *,
        channel_label: str = 'messaging',
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._transport_factory = transport_factory
        self._channel_label = channel_label

        self._role: Role | None = None
        self._phase = SignalingPhase.idle
        self._session_id: str | None = None
        self._transport: Transport | None = None
        self._connection_state = 'new'
        self._error: BaseException | None = None

        self._channel = ChannelCoordinator(
            on_open=lambda: self._post(_ChannelOpened()),
            on_close=lambda: self._post(_ChannelClosed()),
        )
        self._remote_description_set = False
        self._pending_candidates: collections.deque[Candidate] = (
            collections.deque()
        )
        self._subscriptions: list[Subscription] = []

        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._dispatcher: asyncio.Task[Any] | None = None
        self._start_future: asyncio.Future[str] | None = None
        self._settled = asyncio.Event()
        self._phase_callbacks: list[PhaseCallback] = []

    async def __aenter__(self) -> SessionStateMachine:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(role={self._role_name}, '
            f'session_id={self._session_id}, phase={self._phase.value})'
        )

    @property
    def _role_name(self) -> str:
        return 'unassigned' if self._role is None else self._role.value

    @property
    def _log_prefix(self) -> str:
        session = 'pending' if self._session_id is None else self._session_id
        return f'{self.__class__.__name__}[{self._role_name} > {session}]'

    @property
    def role(self) -> Role | None:
        """Role of this participant or `None` before starting."""
        return self._role

    @property
    def phase(self) -> SignalingPhase:
        """Current signaling phase."""
        return self._phase

    @property
    def session_id(self) -> str | None:
        """Identifier of the session once known."""
        return self._session_id

    @property
    def error(self) -> BaseException | None:
        """Error which caused the transition to `failed`, if any."""
        return self._error

    @property
    def channel(self) -> ChannelCoordinator:
        """Coordinator of the data channel."""
        return self._channel

    @property
    def messages(self) -> list[Message]:
        """Copy of the message log."""
        return self._channel.messages

    @property
    def state(self) -> SessionState:
        """Snapshot of the current session state."""
        return SessionState(
            role=self._role,
            phase=self._phase,
            connection_state=self._connection_state,
            channel_state=self._channel.state,
            pending_candidates=tuple(self._pending_candidates),
        )

    def on_phase_change(self, callback: PhaseCallback) -> None:
        """Register a callback invoked with each new phase.

        Exceptions raised by the callback are logged and do not affect the
        session.
        """
        self._phase_callbacks.append(callback)

    def _set_phase(self, phase: SignalingPhase) -> None:
        if phase is self._phase:
            return
        logger.info(
            f'{self._log_prefix}: phase {self._phase.value} -> {phase.value}',
        )
        self._phase = phase
        if phase is SignalingPhase.connected or phase.terminal:
            self._settled.set()
        for callback in self._phase_callbacks:
            try:
                callback(phase)
            except Exception:
                logger.exception(
                    f'{self._log_prefix}: phase callback {callback!r} raised '
                    f'on {phase.value}',
                )

    def _post(self, event: _Event) -> None:
        if self._phase.terminal:
            logger.debug(
                f'{self._log_prefix}: ignoring {type(event).__name__} after '
                f'session {self._phase.value}',
            )
            return
        self._events.put_nowait(event)

    def _on_session_changed(self, session: Session) -> None:
        self._post(_SessionChanged(session))

    def _on_remote_candidate(self, candidate: Candidate) -> None:
        self._post(_RemoteCandidate(candidate))

    def _on_local_candidate(self, candidate: Candidate) -> None:
        self._post(_LocalCandidate(candidate))

    def _on_channel(self, channel: TransportChannel) -> None:
        self._post(_ChannelReceived(channel))

    def _on_connection_state(self, state: str) -> None:
        self._post(_ConnectionStateChanged(state))

    def _on_store_error(self, error: BaseException) -> None:
        self._post(_StoreFailed(error))

    async def start(self, role: Role, session_id: str | None = None) -> str:
        """Start establishing the session in the given role.

        Args:
            role: Role of this participant.
            session_id: Session to join. Required for the responder and
                ignored for the initiator which creates a new session.

        Returns:
            Identifier of the session.

        Raises:
            SessionStateError: If the machine was already started or closed.
            SessionNotFoundError: If the responder's session does not exist.
            SignalingStoreError: If the signaling store fails.
            ValueError: If `session_id` is missing for the responder.
        """
        if role is Role.responder and session_id is None:
            raise ValueError('The responder requires a session_id to join.')
        if (
            self._phase is not SignalingPhase.idle
            or self._dispatcher is not None
        ):
            raise SessionStateError(
                f'Cannot start session in phase {self._phase.value}.',
            )

        future: asyncio.Future[str] = (
            asyncio.get_running_loop().create_future()
        )
        self._dispatcher = spawn_background_task(
            self._dispatch,
            name=f'session-dispatcher-{role.value}',
        )
        self._post(_Start(role, session_id, future))
        return await future

    async def create(self) -> str:
        """Create a new session as the initiator.

        Returns:
            Identifier of the new session to share with the responder.
        """
        return await self.start(Role.initiator)

    async def join(self, session_id: str) -> str:
        """Join an existing session as the responder.

        Raises:
            SessionNotFoundError: If the session does not exist. No transport
                or subscription is created in this case.
        """
        return await self.start(Role.responder, session_id)

    def send(self, text: str) -> bool:
        """Send a text message to the peer.

        Returns:
            If the message was sent. Sending before the channel is open
            logs the failure and leaves the message log unchanged.
        """
        return self._channel.send(text)

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait for the data channel to open.

        Args:
            timeout: Maximum time in seconds to wait. If `None`, wait
                indefinitely for the peer.

        Raises:
            asyncio.TimeoutError: If not connected within `timeout`.
            PeerLinkError: If the session failed before connecting.
            SessionStateError: If the session closed before connecting.
        """
        await asyncio.wait_for(self._settled.wait(), timeout)
        if self._phase is SignalingPhase.failed:
            assert self._error is not None
            if isinstance(self._error, PeerLinkError):
                raise self._error
            raise PeerLinkError(str(self._error)) from self._error
        elif self._phase is SignalingPhase.closed:
            raise SessionStateError('Session closed before connecting.')

    async def close(self) -> None:
        """Disconnect and release all resources.

        The store subscriptions are removed and the phase becomes `closed`
        before this coroutine first suspends, so events delivered after
        calling `close()` are ignored. Closing a session that is already
        closed or failed is a no-op.
        """
        if self._phase.terminal:
            return
        logger.info(f'{self._log_prefix}: disconnecting')
        await self._shutdown(SignalingPhase.closed)
        logger.info(f'{self._log_prefix}: disconnected')

    async def disconnect(self) -> None:
        """Alias of [`close()`][peerlink.session.SessionStateMachine.close]."""
        await self.close()

    async def _shutdown(
        self,
        phase: SignalingPhase,
        error: BaseException | None = None,
    ) -> None:
        self._error = error
        self._set_phase(phase)

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self._pending_candidates.clear()
        self._channel.close()

        if self._start_future is not None and not self._start_future.done():
            if not isinstance(error, Exception):
                error = SessionStateError(
                    f'Session {phase.value} while starting.',
                )
            self._start_future.set_exception(error)

        dispatcher = self._dispatcher
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()

        if self._transport is not None:
            await self._transport.close()

        if dispatcher is not None and dispatcher is not asyncio.current_task():
            try:
                await dispatcher
            except asyncio.CancelledError:
                pass

    async def _fail(self, error: BaseException) -> None:
        logger.error(
            f'{self._log_prefix}: session failed in phase '
            f'{self._phase.value}: {type(error).__name__}: {error}',
        )
        await self._shutdown(SignalingPhase.failed, error)

    async def _dispatch(self) -> None:
        while not self._phase.terminal:
            event = await self._events.get()
            if self._phase.terminal:
                break
            try:
                await self._handle(event)
            except Exception as e:
                await self._fail(e)

    async def _handle(self, event: _Event) -> None:
        if isinstance(event, _Start):
            self._start_future = event.future
            session_id = await self._start(event.role, event.session_id)
            if not event.future.done():
                event.future.set_result(session_id)
        elif isinstance(event, _SessionChanged):
            await self._handle_session_changed(event.session)
        elif isinstance(event, _RemoteCandidate):
            await self._handle_remote_candidate(event.candidate)
        elif isinstance(event, _LocalCandidate):
            await self._handle_local_candidate(event.candidate)
        elif isinstance(event, _ChannelReceived):
            logger.info(f'{self._log_prefix}: data channel received from peer')
            self._channel.bind(event.channel)
        elif isinstance(event, _ChannelOpened):
            self._set_phase(SignalingPhase.connected)
        elif isinstance(event, _ChannelClosed):
            await self.close()
        elif isinstance(event, _ConnectionStateChanged):
            await self._handle_connection_state(event.state)
        elif isinstance(event, _StoreFailed):
            raise event.error
        else:
            raise AssertionError(f'Unknown event type: {event!r}')

    async def _start(self, role: Role, session_id: str | None) -> str:
        self._role = role
        self._set_phase(SignalingPhase.configuring)

        session: Session | None = None
        if role is Role.responder:
            assert session_id is not None
            logger.info(f'{self._log_prefix}: joining session {session_id}')
            session = await self._store.get_session(session_id)
            self._session_id = session_id

        endpoints = await self._credentials.fetch()
        transport = self._transport_factory()
        transport.configure(endpoints)
        self._transport = transport
        transport.on_connection_state(self._on_connection_state)
        transport.on_local_candidate(self._on_local_candidate)

        if role is Role.initiator:
            return await self._start_initiator(transport)
        else:
            assert session is not None
            transport.on_channel(self._on_channel)
            return await self._start_responder(session)

    async def _start_initiator(self, transport: Transport) -> str:
        channel = transport.create_channel(self._channel_label, ordered=True)
        self._channel.bind(channel)

        self._set_phase(SignalingPhase.offering)
        self._session_id = await self._store.create_session()
        logger.info(f'{self._log_prefix}: created session')

        offer = await transport.create_offer()
        offer = await transport.set_local_description(offer)
        logger.info(f'{self._log_prefix}: local description set (offer)')
        await self._store.write_offer(self._session_id, offer)
        logger.info(f'{self._log_prefix}: offer written, waiting for peer')

        await self._subscribe_remote_candidates()
        self._subscriptions.append(
            await self._store.subscribe(
                self._session_id,
                self._on_session_changed,
                on_error=self._on_store_error,
            ),
        )
        return self._session_id

    async def _start_responder(self, session: Session) -> str:
        self._set_phase(SignalingPhase.awaiting_offer)
        await self._subscribe_remote_candidates()

        if session.offer is not None:
            await self._accept_offer(session.offer)
        else:
            # The initiator has created the record but not written the
            # offer yet.
            logger.info(f'{self._log_prefix}: waiting for offer')
            self._subscriptions.append(
                await self._store.subscribe(
                    session.session_id,
                    self._on_session_changed,
                    on_error=self._on_store_error,
                ),
            )
        return session.session_id

    async def _subscribe_remote_candidates(self) -> None:
        assert self._role is not None and self._session_id is not None
        self._subscriptions.append(
            await self._store.subscribe_candidates(
                self._session_id,
                self._role.peer,
                self._on_remote_candidate,
                on_error=self._on_store_error,
            ),
        )

    async def _set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        assert self._transport is not None
        await self._transport.set_remote_description(description)
        self._remote_description_set = True
        logger.info(
            f'{self._log_prefix}: remote description set '
            f'({description.type})',
        )

        pending = len(self._pending_candidates)
        if pending > 0:
            logger.info(
                f'{self._log_prefix}: applying {pending} buffered candidates',
            )
        while self._pending_candidates:
            candidate = self._pending_candidates.popleft()
            await self._transport.add_remote_candidate(candidate)

    async def _accept_offer(self, offer: SessionDescription) -> None:
        assert self._transport is not None and self._session_id is not None
        await self._set_remote_description(offer)

        answer = await self._transport.create_answer()
        answer = await self._transport.set_local_description(answer)
        logger.info(f'{self._log_prefix}: local description set (answer)')
        await self._store.write_answer(self._session_id, answer)
        logger.info(f'{self._log_prefix}: answer written')
        self._set_phase(SignalingPhase.negotiating)

    async def _handle_session_changed(self, session: Session) -> None:
        # Every notification carries the full record so each transition
        # must check whether it has already acted on the field.
        if self._remote_description_set:
            return
        if self._role is Role.initiator and session.answer is not None:
            logger.info(f'{self._log_prefix}: received answer from peer')
            await self._set_remote_description(session.answer)
            self._set_phase(SignalingPhase.negotiating)
        elif self._role is Role.responder and session.offer is not None:
            logger.info(f'{self._log_prefix}: received offer from peer')
            await self._accept_offer(session.offer)

    async def _handle_remote_candidate(self, candidate: Candidate) -> None:
        assert self._transport is not None
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            logger.debug(
                f'{self._log_prefix}: buffered candidate from peer '
                f'({len(self._pending_candidates)} pending)',
            )
            return
        logger.debug(
            f'{self._log_prefix}: adding candidate from peer: '
            f'{candidate.candidate}',
        )
        await self._transport.add_remote_candidate(candidate)

    async def _handle_local_candidate(self, candidate: Candidate) -> None:
        assert self._role is not None and self._session_id is not None
        logger.debug(
            f'{self._log_prefix}: new local candidate: {candidate.candidate}',
        )
        await self._store.append_candidate(
            self._session_id,
            self._role,
            candidate,
        )

    async def _handle_connection_state(self, state: str) -> None:
        self._connection_state = state
        logger.info(f'{self._log_prefix}: connection state changed: {state}')
        if state == 'failed':
            raise TransportFailureError(
                'Transport reported a failed connection.',
            )
        elif state == 'closed':
            await self.close()

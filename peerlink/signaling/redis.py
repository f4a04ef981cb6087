"""Redis signaling store implementation."""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import uuid
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generator

import redis
import redis.asyncio

from peerlink.exceptions import DescriptionConflictError
from peerlink.exceptions import SessionNotFoundError
from peerlink.exceptions import SignalingStoreError
from peerlink.models import Candidate
from peerlink.models import decode_candidates
from peerlink.models import decode_record
from peerlink.models import encode_record
from peerlink.models import Role
from peerlink.models import Session
from peerlink.models import SessionDescription
from peerlink.models import utc_timestamp
from peerlink.signaling.protocols import CandidateCallback
from peerlink.signaling.protocols import ErrorCallback
from peerlink.signaling.protocols import SessionCallback
from peerlink.utils.tasks import spawn_background_task

logger = logging.getLogger(__name__)

_SESSION_EVENT = 'session'


@contextlib.contextmanager
def _store_errors(action: str) -> Generator[None, None, None]:
    try:
        yield
    except redis.exceptions.RedisError as e:
        raise SignalingStoreError(f'Failed to {action}: {e}') from e


class RedisSubscription:
    """Subscription to a Redis signaling store.

    Each subscription is backed by a background task which listens on the
    session's event channel.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task[Any] | None = None
        self._cancelled = False

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(name={self.name})'

    @property
    def active(self) -> bool:
        """If the subscription may still deliver notifications."""
        return (
            not self._cancelled
            and self._task is not None
            and not self._task.done()
        )

    def start(
        self,
        coro: Callable[[], Awaitable[None]],
        on_error: ErrorCallback | None,
    ) -> None:
        """Start the background task running `coro`."""

        def _on_error(exception: BaseException) -> None:
            if not self._cancelled and on_error is not None:
                on_error(exception)

        self._task = spawn_background_task(
            coro,
            name=self.name,
            on_error=_on_error,
        )

    def deliver(self, callback: Callable[[Any], None], value: Any) -> None:
        """Invoke the callback unless the subscription was cancelled."""
        if not self._cancelled:
            callback(value)

    def unsubscribe(self) -> None:
        """Stop delivering notifications and cancel the background task."""
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the background task to exit after cancellation."""
        if self._task is None:
            return
        try:
            await self._task
        except (asyncio.CancelledError, SignalingStoreError):
            # Failures were already reported to the error callback.
            pass


class RedisSignalingStore:
    """Signaling store backed by a Redis server.

    Each session is stored as a JSON string and each candidate collection
    as a Redis list. Every mutation publishes the name of the changed field
    on the session's event channel which subscriptions listen to.

    Example:
        ```python
        from peerlink.signaling.redis import RedisSignalingStore

        store = RedisSignalingStore('localhost', 6379)
        session_id = await store.create_session()
        ...
        await store.close()
        ```

    Args:
        hostname: Redis server hostname.
        port: Redis server port.
        prefix: Prefix of all keys and channels used by this store.
        kwargs: Extra keyword arguments to pass to
            [`redis.asyncio.Redis()`][redis.asyncio.Redis].
    """

    def __init__(
        self,
        hostname: str,
        port: int,
        *,
        prefix: str = 'peerlink',
        **kwargs: Any,
    ) -> None:
        self.hostname = hostname
        self.port = port
        self.prefix = prefix
        self._redis_client = redis.asyncio.StrictRedis(
            host=hostname,
            port=port,
            **kwargs,
        )
        self._subscriptions: set[RedisSubscription] = set()

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(hostname={self.hostname}, '
            f'port={self.port}, prefix={self.prefix})'
        )

    def _session_key(self, session_id: str) -> str:
        return f'{self.prefix}:session:{session_id}'

    def _candidates_key(self, session_id: str, role: Role) -> str:
        return f'{self._session_key(session_id)}:{role.collection}'

    def _events_channel(self, session_id: str) -> str:
        return f'{self._session_key(session_id)}:events'

    async def close(self) -> None:
        """Cancel all active subscriptions and close the client."""
        subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.unsubscribe()
        for subscription in subscriptions:
            await subscription.wait_closed()
        self._subscriptions.clear()
        await self._redis_client.aclose()

    async def _publish(self, session_id: str, event: str) -> None:
        await self._redis_client.publish(
            self._events_channel(session_id),
            event,
        )

    async def create_session(self) -> str:
        """Allocate a new session record."""
        session_id = uuid.uuid4().hex
        session = Session(session_id=session_id, created_at=utc_timestamp())
        with _store_errors(f'create session {session_id}'):
            created = await self._redis_client.set(
                self._session_key(session_id),
                encode_record(session.to_dict()),
                nx=True,
            )
        if not created:  # pragma: no cover
            raise SignalingStoreError(f'Session {session_id} already exists.')
        logger.debug(f'Created session {session_id} in {self!r}')
        return session_id

    async def get_session(self, session_id: str) -> Session:
        """Read the current session record."""
        with _store_errors(f'read session {session_id}'):
            value = await self._redis_client.get(self._session_key(session_id))
        if value is None:
            raise SessionNotFoundError(f'Session {session_id} does not exist.')
        return Session.from_dict(session_id, decode_record(value))

    async def _put_session(self, session: Session, event: str) -> None:
        with _store_errors(f'write session {session.session_id}'):
            await self._redis_client.set(
                self._session_key(session.session_id),
                encode_record(session.to_dict()),
            )
            await self._publish(session.session_id, event)

    async def write_offer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the initiator's offer."""
        session = await self.get_session(session_id)
        if session.offer is not None:
            raise DescriptionConflictError(
                f'Session {session_id} already has an offer.',
            )
        session = dataclasses.replace(session, offer=description)
        await self._put_session(session, _SESSION_EVENT)

    async def write_answer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the responder's answer."""
        session = await self.get_session(session_id)
        if session.offer is None:
            raise DescriptionConflictError(
                f'Session {session_id} has no offer to answer.',
            )
        if session.answer is not None:
            raise DescriptionConflictError(
                f'Session {session_id} already has an answer.',
            )
        session = dataclasses.replace(session, answer=description)
        await self._put_session(session, _SESSION_EVENT)

    async def append_candidate(
        self,
        session_id: str,
        role: Role,
        candidate: Candidate,
    ) -> None:
        """Append a candidate to the collection owned by `role`."""
        with _store_errors(f'append candidate to session {session_id}'):
            await self._redis_client.rpush(
                self._candidates_key(session_id, role),
                encode_record(candidate.to_dict()),
            )
            await self._publish(session_id, role.collection)

    async def _listen(
        self,
        session_id: str,
        event: str,
        on_event: Callable[[], Awaitable[None]],
    ) -> None:
        """Invoke `on_event` once now and again each time `event` is seen.

        The event channel is subscribed to before `on_event` is first invoked
        so no mutation committed after the subscription started is missed.
        """
        pubsub = self._redis_client.pubsub()
        try:
            with _store_errors(f'subscribe to session {session_id}'):
                await pubsub.subscribe(self._events_channel(session_id))
                await on_event()
                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=None,
                    )
                    if message is None:
                        continue
                    data = message['data']
                    if isinstance(data, bytes):
                        data = data.decode()
                    if data == event:
                        await on_event()
        finally:
            await pubsub.aclose()

    def _register(
        self,
        name: str,
        coro: Callable[[], Awaitable[None]],
        on_error: ErrorCallback | None,
    ) -> RedisSubscription:
        subscription = RedisSubscription(name)
        self._subscriptions.add(subscription)

        async def _run() -> None:
            try:
                await coro()
            finally:
                self._subscriptions.discard(subscription)

        subscription.start(_run, on_error)
        return subscription

    async def subscribe(
        self,
        session_id: str,
        on_change: SessionCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> RedisSubscription:
        """Subscribe to changes of a session record.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        await self.get_session(session_id)

        async def _on_event() -> None:
            session = await self.get_session(session_id)
            subscription.deliver(on_change, session)

        async def _watch() -> None:
            await self._listen(session_id, _SESSION_EVENT, _on_event)

        subscription = self._register(
            f'session-{session_id}',
            _watch,
            on_error,
        )
        return subscription

    async def subscribe_candidates(
        self,
        session_id: str,
        role: Role,
        on_added: CandidateCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> RedisSubscription:
        """Subscribe to the candidate collection owned by `role`.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        await self.get_session(session_id)
        key = self._candidates_key(session_id, role)
        # Index of the next record to deliver.
        index = 0

        async def _on_event() -> None:
            nonlocal index
            with _store_errors(f'read candidates of session {session_id}'):
                records = await self._redis_client.lrange(key, index, -1)
            index += len(records)
            for candidate in decode_candidates(records):
                subscription.deliver(on_added, candidate)

        async def _watch() -> None:
            await self._listen(session_id, role.collection, _on_event)

        subscription = self._register(
            f'{role.collection}-{session_id}',
            _watch,
            on_error,
        )
        return subscription

"""In-process signaling store implementation."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import Any
from typing import Callable

from peerlink.exceptions import DescriptionConflictError
from peerlink.exceptions import SessionNotFoundError
from peerlink.models import Candidate
from peerlink.models import Role
from peerlink.models import Session
from peerlink.models import SessionDescription
from peerlink.models import utc_timestamp
from peerlink.signaling.protocols import CandidateCallback
from peerlink.signaling.protocols import ErrorCallback
from peerlink.signaling.protocols import SessionCallback

logger = logging.getLogger(__name__)


class LocalSubscription:
    """Subscription to a local signaling store.

    Notifications are scheduled on the event loop with
    [`call_soon()`][asyncio.loop.call_soon] so they are delivered
    asynchronously and in the order they were scheduled.
    """

    def __init__(
        self,
        callback: Callable[[Any], None],
        on_cancel: Callable[[LocalSubscription], None],
    ) -> None:
        self._callback = callback
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        """If the subscription may still deliver notifications."""
        return self._active

    def notify(self, value: Any) -> None:
        """Schedule delivery of `value` to the callback."""
        asyncio.get_running_loop().call_soon(self._deliver, value)

    def _deliver(self, value: Any) -> None:
        if self._active:
            self._callback(value)

    def unsubscribe(self) -> None:
        """Stop delivering notifications."""
        if self._active:
            self._active = False
            self._on_cancel(self)


class LocalSignalingStore:
    """Signaling store that keeps records in the local process's memory.

    Warning:
        This store exists primarily for testing purposes. Both participants
        must share the same instance.

    Args:
        sessions: Dictionary to store session records in. If not specified,
            a new empty dict will be generated.
    """

    def __init__(self, sessions: dict[str, Session] | None = None) -> None:
        self._sessions: dict[str, Session] = (
            {} if sessions is None else sessions
        )
        self._candidates: dict[tuple[str, Role], list[Candidate]] = {}
        self._session_subs: dict[str, list[LocalSubscription]] = {}
        self._candidate_subs: dict[
            tuple[str, Role],
            list[LocalSubscription],
        ] = {}

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(sessions={len(self._sessions)})'

    async def close(self) -> None:
        """Cancel all active subscriptions."""
        for subs in list(self._session_subs.values()):
            for sub in list(subs):
                sub.unsubscribe()
        for subs in list(self._candidate_subs.values()):
            for sub in list(subs):
                sub.unsubscribe()

    def _get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(
                f'Session {session_id} does not exist.',
            ) from None

    def _commit(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        for sub in self._session_subs.get(session.session_id, []):
            sub.notify(session)

    async def create_session(self) -> str:
        """Allocate a new session record."""
        session_id = uuid.uuid4().hex
        session = Session(session_id=session_id, created_at=utc_timestamp())
        self._commit(session)
        logger.debug(f'Created session {session_id}')
        return session_id

    async def get_session(self, session_id: str) -> Session:
        """Read the current session record."""
        return self._get(session_id)

    async def write_offer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the initiator's offer."""
        session = self._get(session_id)
        if session.offer is not None:
            raise DescriptionConflictError(
                f'Session {session_id} already has an offer.',
            )
        self._commit(dataclasses.replace(session, offer=description))

    async def write_answer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the responder's answer."""
        session = self._get(session_id)
        if session.offer is None:
            raise DescriptionConflictError(
                f'Session {session_id} has no offer to answer.',
            )
        if session.answer is not None:
            raise DescriptionConflictError(
                f'Session {session_id} already has an answer.',
            )
        self._commit(dataclasses.replace(session, answer=description))

    async def subscribe(
        self,
        session_id: str,
        on_change: SessionCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> LocalSubscription:
        """Subscribe to changes of a session record."""
        session = self._get(session_id)
        subs = self._session_subs.setdefault(session_id, [])
        sub = LocalSubscription(on_change, subs.remove)
        subs.append(sub)
        sub.notify(session)
        return sub

    async def append_candidate(
        self,
        session_id: str,
        role: Role,
        candidate: Candidate,
    ) -> None:
        """Append a candidate to the collection owned by `role`."""
        self._get(session_id)
        key = (session_id, role)
        self._candidates.setdefault(key, []).append(candidate)
        for sub in self._candidate_subs.get(key, []):
            sub.notify(candidate)

    async def subscribe_candidates(
        self,
        session_id: str,
        role: Role,
        on_added: CandidateCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> LocalSubscription:
        """Subscribe to the candidate collection owned by `role`."""
        self._get(session_id)
        key = (session_id, role)
        subs = self._candidate_subs.setdefault(key, [])
        sub = LocalSubscription(on_added, subs.remove)
        subs.append(sub)
        for candidate in self._candidates.get(key, []):
            sub.notify(candidate)
        return sub

    def candidates(self, session_id: str, role: Role) -> list[Candidate]:
        """Return a copy of the candidate collection owned by `role`."""
        return list(self._candidates.get((session_id, role), []))

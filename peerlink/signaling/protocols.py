"""Signaling store interface protocol."""
from __future__ import annotations

from typing import Callable
from typing import Protocol
from typing import runtime_checkable

from peerlink.models import Candidate
from peerlink.models import Role
from peerlink.models import Session
from peerlink.models import SessionDescription

SessionCallback = Callable[[Session], None]
CandidateCallback = Callable[[Candidate], None]
ErrorCallback = Callable[[BaseException], None]


@runtime_checkable
class Subscription(Protocol):
    """Handle to an active store subscription."""

    @property
    def active(self) -> bool:
        """If the subscription may still deliver notifications."""
        ...

    def unsubscribe(self) -> None:
        """Stop delivering notifications.

        This method is synchronous and idempotent. No callback is invoked
        after it returns.
        """
        ...


@runtime_checkable
class SignalingStore(Protocol):
    """Shared record store used to exchange signaling data.

    Callbacks passed to the subscribe methods are invoked from the event
    loop and must not block.
    """

    async def close(self) -> None:
        """Close the store and cancel all active subscriptions."""
        ...

    async def create_session(self) -> str:
        """Allocate a new session record.

        Returns:
            Globally unique identifier of the new session.
        """
        ...

    async def get_session(self, session_id: str) -> Session:
        """Read the current session record.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        ...

    async def write_offer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the initiator's offer.

        Raises:
            SessionNotFoundError: If the session does not exist.
            DescriptionConflictError: If an offer was already written.
        """
        ...

    async def write_answer(
        self,
        session_id: str,
        description: SessionDescription,
    ) -> None:
        """Write the responder's answer.

        Raises:
            SessionNotFoundError: If the session does not exist.
            DescriptionConflictError: If an answer was already written or
                the offer has not been written yet.
        """
        ...

    async def subscribe(
        self,
        session_id: str,
        on_change: SessionCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Subscribe to changes of a session record.

        The full current record is delivered once on subscription and again
        after every committed mutation, in commit order.

        Args:
            session_id: Session to observe.
            on_change: Callback invoked with the full record.
            on_error: Callback invoked if the subscription fails.
        """
        ...

    async def append_candidate(
        self,
        session_id: str,
        role: Role,
        candidate: Candidate,
    ) -> None:
        """Append a candidate to the collection owned by `role`."""
        ...

    async def subscribe_candidates(
        self,
        session_id: str,
        role: Role,
        on_added: CandidateCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Subscribe to the candidate collection owned by `role`.

        Candidates already in the collection are replayed first. Every
        candidate is delivered exactly once and in append order.

        Args:
            session_id: Session to observe.
            role: Role whose collection is observed.
            on_added: Callback invoked with each candidate.
            on_error: Callback invoked if the subscription fails.
        """
        ...

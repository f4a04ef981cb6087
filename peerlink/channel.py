"""Message exchange over an established data channel."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from peerlink.exceptions import ChannelNotOpenError
from peerlink.models import Message
from peerlink.models import Sender
from peerlink.transport import TransportChannel

logger = logging.getLogger(__name__)


class ChannelCoordinator:
    """Bind a transport channel to the session and keep the message log.

    The coordinator is created before the channel exists. On the initiator
    side it is bound to the channel it creates. On the responder side it is
    bound once the channel is received from the peer.

    Messages from the peer are appended to the message log and queued for
    [`recv()`][peerlink.channel.ChannelCoordinator.recv]. At most
    `max_pending` unread messages are queued. When the queue is full the
    oldest unread message is dropped from the queue but kept in the log.

    Args:
        on_open: Callback invoked once when the channel opens.
        on_close: Callback invoked once when the channel closes.
        max_pending: Maximum number of messages queued for `recv()`.
    """

    def __init__(
        self,
        *,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
        max_pending: int = 1000,
    ) -> None:
        self._on_open = on_open
        self._on_close = on_close
        self._channel: TransportChannel | None = None
        self._state = 'new'
        self._messages: list[Message] = []
        self._incoming: asyncio.Queue[Message] = asyncio.Queue(
            maxsize=max_pending,
        )

    def __repr__(self) -> str:
        label = None if self._channel is None else self._channel.label
        return f'{self.__class__.__name__}(label={label}, state={self.state})'

    @property
    def state(self) -> str:
        """One of `new`, `connecting`, `open`, or `closed`."""
        return self._state

    @property
    def is_open(self) -> bool:
        """If messages can be sent."""
        return self._state == 'open'

    @property
    def messages(self) -> list[Message]:
        """Copy of the message log in the order messages were logged."""
        return list(self._messages)

    def bind(self, channel: TransportChannel) -> None:
        """Attach to a transport channel.

        Only the first channel is bound. Channels received afterwards are
        logged and ignored.
        """
        if self._channel is not None:
            logger.warning(
                f'Ignoring channel {channel.label}: already bound to channel '
                f'{self._channel.label}',
            )
            return
        if self._state == 'closed':
            channel.close()
            return

        self._channel = channel
        self._state = 'connecting'
        channel.on_open(self._handle_open)
        channel.on_close(self._handle_close)
        channel.on_error(self._handle_error)
        channel.on_message(self._handle_message)

        # Channels received from the peer may already be open.
        if channel.ready_state == 'open':
            self._handle_open()

    def _handle_open(self) -> None:
        if self._state != 'connecting':
            return
        self._state = 'open'
        logger.info('Data channel opened')
        if self._on_open is not None:
            self._on_open()

    def _handle_close(self) -> None:
        if self._state == 'closed':
            return
        self._state = 'closed'
        logger.warning('Data channel closed')
        if self._on_close is not None:
            self._on_close()

    def _handle_error(self, error: Exception) -> None:
        logger.error(f'Data channel error: {error}')

    def _handle_message(self, text: str) -> None:
        if self._state == 'closed':
            return
        logger.info(f'Message received: {text}')
        message = Message(text=text, sender=Sender.peer)
        self._messages.append(message)
        if self._incoming.full():
            dropped = self._incoming.get_nowait()
            logger.warning(
                f'Receive queue is full, dropping unread message: '
                f'{dropped.text}',
            )
        self._incoming.put_nowait(message)

    def _open_channel(self) -> TransportChannel:
        if self._channel is None or self._state != 'open':
            raise ChannelNotOpenError(
                f'Data channel is not open (state={self._state}).',
            )
        return self._channel

    def send(self, text: str) -> bool:
        """Send a text message to the peer.

        Sending outside the open state is not an error for the caller: the
        failure is logged, the message log is unchanged, and `False` is
        returned.

        Returns:
            If the message was sent.
        """
        try:
            channel = self._open_channel()
        except ChannelNotOpenError as e:
            logger.error(f'Cannot send message: {e}')
            return False

        try:
            channel.send(text)
        except Exception as e:
            logger.error(f'Error sending message: {e}')
            return False

        logger.info(f'Message sent: {text}')
        self._messages.append(Message(text=text, sender=Sender.self))
        return True

    async def recv(self, timeout: float | None = None) -> Message:
        """Wait for the next message from the peer.

        Raises:
            asyncio.TimeoutError: If no message is received within `timeout`
                seconds.
        """
        return await asyncio.wait_for(self._incoming.get(), timeout)

    def close(self) -> None:
        """Close the channel.

        Safe to call more than once and before the channel is open. The
        `on_close` callback is not invoked for explicit closes.
        """
        if self._state == 'closed':
            return
        self._state = 'closed'
        if self._channel is not None:
            self._channel.close()

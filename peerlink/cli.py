"""`peerlink` command-line interface.

Create a room and share its id with a peer:

```bash
$ peerlink create
```

The peer joins the room and both sides can exchange messages by typing
lines into the terminal. Type `/quit` or send EOF to leave the room.

```bash
$ peerlink join <ROOM_ID>
```
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import sys

import click

import peerlink
from peerlink.config import LoggingConfig
from peerlink.config import PeerLinkConfig
from peerlink.credentials import get_credential_provider
from peerlink.exceptions import PeerLinkError
from peerlink.exceptions import SessionNotFoundError
from peerlink.models import Role
from peerlink.models import SignalingPhase
from peerlink.session import SessionStateMachine
from peerlink.signaling import get_store

logger = logging.getLogger(__name__)

QUIT_COMMAND = '/quit'


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger according to the logging config."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'peerlink.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.default_level,
        handlers=handlers,
    )

    logging.getLogger('aiortc').setLevel(config.aiortc_level)
    logging.getLogger('aioice').setLevel(config.aiortc_level)


async def open_stdin() -> asyncio.StreamReader:
    """Wrap stdin in a stream reader of the running event loop."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def print_incoming(session: SessionStateMachine) -> None:
    """Print messages received from the peer until cancelled."""
    while True:
        message = await session.channel.recv()
        click.echo(f'peer> {message.text}')


async def chat(
    session: SessionStateMachine,
    reader: asyncio.StreamReader,
) -> None:
    """Send lines read from `reader` until quit, EOF, or the session ends."""
    ended = asyncio.Event()
    session.on_phase_change(
        lambda phase: ended.set() if phase.terminal else None,
    )
    printer = asyncio.create_task(print_incoming(session))
    ended_waiter = asyncio.create_task(ended.wait())

    try:
        while session.phase is SignalingPhase.connected:
            line = asyncio.create_task(reader.readline())
            done, _ = await asyncio.wait(
                {line, ended_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if line not in done:
                line.cancel()
                click.echo('Peer disconnected.')
                break

            raw = line.result()
            if not raw:
                break
            text = raw.decode().strip()
            if text == QUIT_COMMAND:
                break
            elif text:
                session.send(text)
    finally:
        for task in (printer, ended_waiter):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


async def run_session(
    config: PeerLinkConfig,
    role: Role,
    session_id: str | None = None,
    *,
    reader: asyncio.StreamReader | None = None,
) -> None:
    """Establish a session in `role` and chat with the peer over stdin.

    Args:
        config: PeerLink configuration.
        role: Role of this participant.
        session_id: Room to join as the responder.
        reader: Stream to read outgoing messages from. Defaults to stdin.

    Raises:
        SessionNotFoundError: If the room to join does not exist.
        PeerLinkError: If establishing the session fails.
    """
    store = get_store(config.signaling)
    credentials = get_credential_provider(config.credentials)
    session = SessionStateMachine(
        store,
        credentials,
        channel_label=config.channel_label,
    )
    session.on_phase_change(lambda phase: click.echo(f'* {phase.value}'))

    try:
        room_id = await session.start(role, session_id)
        if role is Role.initiator:
            click.echo(f'Room created: {room_id}')
            click.echo(f'Share it with your peer: peerlink join {room_id}')

        await session.wait_connected()
        click.echo(f'Connected. Type messages or {QUIT_COMMAND} to leave.')

        if reader is None:
            reader = await open_stdin()
        await chat(session, reader)
    finally:
        await session.disconnect()
        await store.close()


@click.group()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--redis-host', metavar='ADDR', help='Redis server hostname.')
@click.option('--redis-port', type=int, metavar='PORT', help='Redis port.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    redis_host: str | None,
    redis_port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Exchange messages with a peer over a peer-to-peer channel.

    If no configuration file is provided, a default configuration will be
    created from [`PeerLinkConfig()`][peerlink.config.PeerLinkConfig]. The
    remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        PeerLinkConfig()
        if config_path is None
        else PeerLinkConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if redis_host is not None:
        config.signaling.hostname = redis_host
    if redis_port is not None:
        config.signaling.port = redis_port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level)

    configure_logging(config.logging)

    ctx.ensure_object(dict)
    ctx.obj['CONFIG'] = config


@cli.command()
def version() -> None:
    """Show the PeerLink version."""
    click.echo(f'PeerLink v{peerlink.__version__}')


@cli.command()
@click.pass_context
def create(ctx: click.Context) -> None:
    """Create a new room and wait for a peer to join."""
    config = ctx.obj['CONFIG']
    try:
        asyncio.run(run_session(config, Role.initiator))
    except PeerLinkError as e:
        logger.error(f'Session failed: {e}')
        sys.exit(1)


@cli.command()
@click.argument('room_id', metavar='ROOM_ID', required=True)
@click.pass_context
def join(ctx: click.Context, room_id: str) -> None:
    """Join the room created by a peer."""
    config = ctx.obj['CONFIG']
    try:
        asyncio.run(run_session(config, Role.responder, room_id))
    except SessionNotFoundError:
        click.echo(f'Room not found: {room_id}', err=True)
        sys.exit(1)
    except PeerLinkError as e:
        logger.error(f'Session failed: {e}')
        sys.exit(1)

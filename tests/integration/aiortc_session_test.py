"""Establish a session over the aiortc transport on the local host."""
from __future__ import annotations

import asyncio

import pytest

from peerlink.credentials import StaticCredentialProvider
from peerlink.models import Sender
from peerlink.models import SignalingPhase
from peerlink.session import SessionStateMachine
from peerlink.signaling.local import LocalSignalingStore


@pytest.mark.asyncio()
async def test_establish_over_aiortc() -> None:
    store = LocalSignalingStore()
    credentials = StaticCredentialProvider()

    async with SessionStateMachine(store, credentials) as initiator:
        async with SessionStateMachine(store, credentials) as responder:
            session_id = await initiator.create()
            await responder.join(session_id)

            await asyncio.wait_for(
                asyncio.gather(
                    initiator.wait_connected(),
                    responder.wait_connected(),
                ),
                timeout=30,
            )
            assert initiator.phase is SignalingPhase.connected
            assert responder.phase is SignalingPhase.connected

            assert initiator.send('hello')
            message = await responder.channel.recv(timeout=5)
            assert message.text == 'hello'
            assert message.sender is Sender.peer

            assert responder.send('hi')
            message = await initiator.channel.recv(timeout=5)
            assert message.text == 'hi'

    assert initiator.phase is SignalingPhase.closed
    await store.close()

"""Signaling stores used to exchange descriptions and candidates.

A signaling store holds one shared record per session plus two
append-only candidate collections, one per
[`Role`][peerlink.models.Role]. Two implementations are provided:

* [`LocalSignalingStore`][peerlink.signaling.local.LocalSignalingStore]
  keeps records in the memory of the current process and is primarily used
  for testing.
* [`RedisSignalingStore`][peerlink.signaling.redis.RedisSignalingStore]
  keeps records in a Redis server shared by both participants.
"""
from __future__ import annotations

from peerlink.config import SignalingConfig
from peerlink.signaling.local import LocalSignalingStore
from peerlink.signaling.protocols import SignalingStore
from peerlink.signaling.protocols import Subscription
from peerlink.signaling.redis import RedisSignalingStore


def get_store(config: SignalingConfig) -> SignalingStore:
    """Create a signaling store from a configuration.

    Raises:
        ValueError: If the backend in the config is unknown.
    """
    if config.backend == 'redis':
        return RedisSignalingStore(
            config.hostname,
            config.port,
            prefix=config.prefix,
        )
    else:
        raise ValueError(f'Unknown signaling backend: {config.backend}.')

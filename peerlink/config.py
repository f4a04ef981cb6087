"""PeerLink configuration file parsing."""
from __future__ import annotations

import logging
import os
import pathlib
import sys
from typing import Literal

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

KEY_ID_ENV_VAR = 'CLOUDFLARE_TURN_KEY_ID'
API_TOKEN_ENV_VAR = 'CLOUDFLARE_TURN_API_TOKEN'


class CredentialConfig(BaseModel):
    """Credential issuing service configuration.

    Attributes:
        url: Address of a custom issuing endpoint. Takes precedence over
            `key_id`.
        key_id: Cloudflare TURN key identifier. Read from
            `$CLOUDFLARE_TURN_KEY_ID` if not set.
        api_token: Bearer token for the issuing service. Read from
            `$CLOUDFLARE_TURN_API_TOKEN` if not set. Excluded from the
            [`repr()`][repr] of this class because it is a secret.
        ttl: Lease duration in seconds requested for credentials.
        timeout: Request timeout in seconds.
    """

    model_config = ConfigDict(extra='forbid')

    url: str | None = None
    key_id: str | None = None
    api_token: str | None = Field(default=None, repr=False)
    ttl: int = 86400
    timeout: float = 10

    def resolved_key_id(self) -> str | None:
        """Return the key id, falling back to the environment."""
        return self.key_id or os.environ.get(KEY_ID_ENV_VAR)

    def resolved_api_token(self) -> str | None:
        """Return the API token, falling back to the environment."""
        return self.api_token or os.environ.get(API_TOKEN_ENV_VAR)


class SignalingConfig(BaseModel):
    """Signaling store configuration.

    Attributes:
        backend: Store implementation. Only stores reachable by both
            participants are supported here.
        hostname: Store server hostname.
        port: Store server port.
        prefix: Prefix of all keys used in the store.
    """

    model_config = ConfigDict(extra='forbid')

    backend: Literal['redis'] = 'redis'
    hostname: str = 'localhost'
    port: int = 6379
    prefix: str = 'peerlink'


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Optional directory to write rotating log files to.
        default_level: Default logging level for the root logger.
        aiortc_level: Log level for the `aiortc` and `aioice` loggers. They
            log with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
    """

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    aiortc_level: int | str = logging.WARNING


class PeerLinkConfig(BaseModel):
    """PeerLink configuration.

    Attributes:
        credentials: Credential issuing configuration.
        signaling: Signaling store configuration.
        logging: Logging configuration.
        channel_label: Label of the data channel opened by the initiator.
    """

    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    channel_label: str = 'messaging'

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="peerlink.toml"
            channel_label = "messaging"

            [credentials]
            key_id = "..."
            ttl = 86400

            [signaling]
            hostname = "redis.example.com"
            port = 6379

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            ```

            ```python
            from peerlink.config import PeerLinkConfig

            config = PeerLinkConfig.from_toml('peerlink.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return cls.model_validate(tomllib.load(f))

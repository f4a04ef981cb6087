"""Fetch time-limited relay and reflection endpoints for a session.

Endpoint configuration cannot be changed after a transport is created so
a provider is asked exactly once per establishment attempt, before the
transport is configured. Failing to obtain credentials is never fatal:
the provider falls back to a static set of public reflection endpoints.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Protocol
from typing import runtime_checkable

import requests

from peerlink.config import CredentialConfig
from peerlink.models import EndpointConfig
from peerlink.models import EndpointDescriptor

logger = logging.getLogger(__name__)

CLOUDFLARE_TURN_URL = (
    'https://rtc.live.cloudflare.com/v1/turn/keys/{key_id}/credentials/'
    'generate-ice-servers'
)
"""Issuing endpoint of the Cloudflare Realtime TURN service."""

DEFAULT_TTL = 86400
"""Default lease duration in seconds of issued credentials (24 hours)."""

FALLBACK_ENDPOINTS = EndpointConfig.from_urls(
    [
        'stun:stun.google.com:19302',
        'stun:stun1.l.google.com:19302',
        'stun:stun2.l.google.com:19302',
    ],
)
"""Public reflection-only endpoints used when issuance fails."""


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of endpoint configuration for one establishment attempt."""

    async def fetch(self) -> EndpointConfig:
        """Fetch the endpoint configuration.

        Implementations must not raise. Errors are logged and a fallback
        configuration is returned instead.
        """
        ...


class StaticCredentialProvider:
    """Provider which always returns the same configuration.

    Args:
        config: Endpoint configuration to return. Defaults to an empty
            configuration so only host candidates are gathered.
    """

    def __init__(self, config: EndpointConfig | None = None) -> None:
        self._config = EndpointConfig() if config is None else config

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(endpoints={len(self._config)})'

    async def fetch(self) -> EndpointConfig:
        """Return the static configuration."""
        log_endpoints(self._config)
        return self._config


class IssuingServiceCredentialProvider:
    """Provider backed by an HTTP credential issuing service.

    The service is sent a single POST request with the lease duration and is
    expected to reply with a JSON object containing a non-empty
    `iceServers` list. Any other outcome is treated as a failure.

    Example:
        ```python
        from peerlink.credentials import IssuingServiceCredentialProvider

        provider = IssuingServiceCredentialProvider.from_cloudflare(
            key_id='...',
            api_token='...',
        )
        config = await provider.fetch()
        ```

    Args:
        url: Address of the issuing endpoint. If `None`, the provider is
            unconfigured and always returns the fallback configuration.
        api_token: Bearer token sent in the `Authorization` header.
        ttl: Lease duration in seconds requested for the credentials.
        timeout: Request timeout in seconds.
        fallback: Configuration returned on failure.
        session: Session instance to use for making the request.
    """

    def __init__(
        self,
        url: str | None,
        *,
        api_token: str | None = None,
        ttl: int = DEFAULT_TTL,
        timeout: float = 10,
        fallback: EndpointConfig = FALLBACK_ENDPOINTS,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.ttl = ttl
        self.timeout = timeout
        self._api_token = api_token
        self._fallback = fallback
        self._session = session

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(url={self.url}, ttl={self.ttl})'

    @classmethod
    def from_cloudflare(
        cls,
        key_id: str | None,
        api_token: str | None,
        **kwargs: Any,
    ) -> IssuingServiceCredentialProvider:
        """Create a provider for the Cloudflare TURN credential service.

        Args:
            key_id: TURN key identifier.
            api_token: API token for the TURN key.
            kwargs: Extra keyword arguments for the provider.
        """
        if key_id is None or api_token is None:
            logger.warning(
                'Cloudflare TURN key id or API token is not configured',
            )
            return cls(None, **kwargs)
        return cls(
            CLOUDFLARE_TURN_URL.format(key_id=key_id),
            api_token=api_token,
            **kwargs,
        )

    def _request(self) -> dict[str, Any]:
        assert self.url is not None
        headers = {'Content-Type': 'application/json'}
        if self._api_token is not None:
            headers['Authorization'] = f'Bearer {self._api_token}'

        post = requests.post if self._session is None else self._session.post
        response = post(
            self.url,
            json={'ttl': self.ttl},
            headers=headers,
            timeout=self.timeout,
        )
        if not response.ok:
            raise requests.exceptions.RequestException(
                'Issuing service returned HTTP error code '
                f'{response.status_code}. {response.text}',
                response=response,
            )
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError('Issuing service response is not a JSON object.')
        return data

    def _parse(self, data: dict[str, Any]) -> EndpointConfig:
        servers = data.get('iceServers')
        if not isinstance(servers, list) or len(servers) == 0:
            raise ValueError('No ICE servers returned.')
        return EndpointConfig(
            tuple(
                EndpointDescriptor.from_dict(server, ttl=self.ttl)
                for server in servers
            ),
        )

    async def fetch(self) -> EndpointConfig:
        """Request a new endpoint configuration from the issuing service.

        Returns:
            The issued configuration or the fallback configuration if the
            request fails for any reason.
        """
        if self.url is None:
            logger.warning(
                'No credential issuing service configured, falling back to '
                'public STUN servers only',
            )
            log_endpoints(self._fallback)
            return self._fallback

        logger.info(f'Fetching ICE servers from {self.url}')
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, self._request)
            config = self._parse(data)
        except (
            requests.exceptions.RequestException,
            AttributeError,
            TypeError,
            ValueError,
        ) as e:
            logger.warning(f'Failed to fetch ICE servers: {e}')
            logger.warning('Falling back to public STUN servers only')
            config = self._fallback
        else:
            logger.info(f'Received {len(config)} ICE servers')

        log_endpoints(config)
        return config


def log_endpoints(config: EndpointConfig) -> None:
    """Log the role and address of each endpoint in a configuration."""
    for endpoint in config:
        kind = 'TURN' if endpoint.is_relay else 'STUN'
        logger.info(f'  {kind}: {", ".join(endpoint.urls)}')


def get_credential_provider(
    config: CredentialConfig,
) -> IssuingServiceCredentialProvider:
    """Create a credential provider from a configuration.

    A custom issuing `url` takes precedence over a Cloudflare `key_id`. If
    neither is configured the provider always returns
    [`FALLBACK_ENDPOINTS`][peerlink.credentials.FALLBACK_ENDPOINTS].
    """
    kwargs: dict[str, Any] = {'ttl': config.ttl, 'timeout': config.timeout}
    if config.url is not None:
        return IssuingServiceCredentialProvider(
            config.url,
            api_token=config.resolved_api_token(),
            **kwargs,
        )
    return IssuingServiceCredentialProvider.from_cloudflare(
        config.resolved_key_id(),
        config.resolved_api_token(),
        **kwargs,
    )

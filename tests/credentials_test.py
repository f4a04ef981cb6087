from __future__ import annotations

import logging
from unittest import mock

import pytest
import requests

from peerlink.config import CredentialConfig
from peerlink.credentials import CLOUDFLARE_TURN_URL
from peerlink.credentials import CredentialProvider
from peerlink.credentials import FALLBACK_ENDPOINTS
from peerlink.credentials import get_credential_provider
from peerlink.credentials import IssuingServiceCredentialProvider
from peerlink.credentials import StaticCredentialProvider
from peerlink.models import EndpointConfig

URL = 'https://turn.example.com/credentials'

ICE_SERVERS = {
    'iceServers': [
        {'urls': ['stun:stun.example.com:3478']},
        {
            'urls': [
                'turn:turn.example.com:3478?transport=udp',
                'turns:turn.example.com:5349?transport=tcp',
            ],
            'username': 'user',
            'credential': 'secret',
        },
    ],
}


def _response(status_code: int, body=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.json = lambda: body  # type: ignore
    return response


def test_providers_implement_protocol() -> None:
    assert isinstance(StaticCredentialProvider(), CredentialProvider)
    assert isinstance(
        IssuingServiceCredentialProvider(URL),
        CredentialProvider,
    )


@pytest.mark.asyncio()
async def test_static_provider() -> None:
    config = EndpointConfig.from_urls(['stun:localhost:3478'])
    assert await StaticCredentialProvider(config).fetch() == config
    assert len(await StaticCredentialProvider().fetch()) == 0
    assert await StaticCredentialProvider().fetch() != FALLBACK_ENDPOINTS


@pytest.mark.asyncio()
async def test_fetch_issued_endpoints(caplog) -> None:
    caplog.set_level(logging.INFO)
    provider = IssuingServiceCredentialProvider(URL, api_token='token', ttl=60)

    with mock.patch(
        'requests.post',
        return_value=_response(201, ICE_SERVERS),
    ) as mock_post:
        config = await provider.fetch()

    mock_post.assert_called_once()
    assert mock_post.call_args.args == (URL,)
    assert mock_post.call_args.kwargs['json'] == {'ttl': 60}
    headers = mock_post.call_args.kwargs['headers']
    assert headers['Authorization'] == 'Bearer token'

    endpoints = list(config)
    assert len(endpoints) == 2
    assert not endpoints[0].is_relay
    assert endpoints[1].is_relay
    assert endpoints[1].username == 'user'
    assert endpoints[1].credential == 'secret'
    assert all(endpoint.ttl == 60 for endpoint in endpoints)

    assert any('Received 2 ICE servers' in r.message for r in caplog.records)
    assert any('TURN: turn:' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_fetch_with_session() -> None:
    session = requests.Session()
    provider = IssuingServiceCredentialProvider(URL, session=session)

    with mock.patch(
        'requests.Session.post',
        return_value=_response(200, ICE_SERVERS),
    ) as mock_post:
        config = await provider.fetch()

    mock_post.assert_called_once()
    assert 'Authorization' not in mock_post.call_args.kwargs['headers']
    assert len(config) == 2


@pytest.mark.asyncio()
async def test_fetch_http_error_falls_back(caplog) -> None:
    caplog.set_level(logging.WARNING)
    provider = IssuingServiceCredentialProvider(URL, api_token='token')

    with mock.patch('requests.post', return_value=_response(500)):
        config = await provider.fetch()

    assert config == FALLBACK_ENDPOINTS
    assert len(config) >= 1
    assert not any(endpoint.is_relay for endpoint in config)
    assert any(
        'Failed to fetch ICE servers' in r.message
        and r.levelname == 'WARNING'
        for r in caplog.records
    )
    assert any('public STUN servers only' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_fetch_connection_error_falls_back() -> None:
    provider = IssuingServiceCredentialProvider(URL)

    with mock.patch(
        'requests.post',
        side_effect=requests.exceptions.ConnectionError('unreachable'),
    ):
        assert await provider.fetch() == FALLBACK_ENDPOINTS


@pytest.mark.parametrize(
    'body',
    ({}, {'iceServers': []}, {'iceServers': [{}]}, ['stun:a'], None),
)
@pytest.mark.asyncio()
async def test_fetch_malformed_response_falls_back(body) -> None:
    provider = IssuingServiceCredentialProvider(URL)

    with mock.patch('requests.post', return_value=_response(200, body)):
        assert await provider.fetch() == FALLBACK_ENDPOINTS


@pytest.mark.asyncio()
async def test_fetch_custom_fallback() -> None:
    fallback = EndpointConfig.from_urls(['stun:localhost:3478'])
    provider = IssuingServiceCredentialProvider(URL, fallback=fallback)

    with mock.patch('requests.post', return_value=_response(404)):
        assert await provider.fetch() == fallback


@pytest.mark.asyncio()
async def test_unconfigured_provider_skips_request(caplog) -> None:
    caplog.set_level(logging.WARNING)
    provider = IssuingServiceCredentialProvider(None)

    with mock.patch('requests.post') as mock_post:
        assert await provider.fetch() == FALLBACK_ENDPOINTS

    mock_post.assert_not_called()
    assert any('public STUN servers' in r.message for r in caplog.records)


def test_from_cloudflare() -> None:
    provider = IssuingServiceCredentialProvider.from_cloudflare('abc', 'tok')
    assert provider.url == CLOUDFLARE_TURN_URL.format(key_id='abc')
    assert 'tok' not in repr(provider)

    provider = IssuingServiceCredentialProvider.from_cloudflare(None, 'tok')
    assert provider.url is None


def test_get_credential_provider(monkeypatch) -> None:
    monkeypatch.delenv('CLOUDFLARE_TURN_KEY_ID', raising=False)
    monkeypatch.delenv('CLOUDFLARE_TURN_API_TOKEN', raising=False)

    provider = get_credential_provider(CredentialConfig(url=URL, ttl=30))
    assert provider.url == URL
    assert provider.ttl == 30

    provider = get_credential_provider(CredentialConfig())
    assert provider.url is None

    monkeypatch.setenv('CLOUDFLARE_TURN_KEY_ID', 'key')
    monkeypatch.setenv('CLOUDFLARE_TURN_API_TOKEN', 'token')
    provider = get_credential_provider(CredentialConfig())
    assert provider.url == CLOUDFLARE_TURN_URL.format(key_id='key')

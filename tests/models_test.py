from __future__ import annotations

import json

import pytest

from peerlink.exceptions import SignalingDecodeError
from peerlink.models import Candidate
from peerlink.models import decode_candidates
from peerlink.models import decode_record
from peerlink.models import encode_record
from peerlink.models import EndpointConfig
from peerlink.models import EndpointDescriptor
from peerlink.models import Role
from peerlink.models import Session
from peerlink.models import SessionDescription
from peerlink.models import SignalingPhase


def test_role_collections() -> None:
    assert Role.initiator.collection == 'initiatorCandidates'
    assert Role.responder.collection == 'responderCandidates'
    assert Role.initiator.peer is Role.responder
    assert Role.responder.peer is Role.initiator


def test_terminal_phases() -> None:
    terminal = {phase for phase in SignalingPhase if phase.terminal}
    assert terminal == {SignalingPhase.closed, SignalingPhase.failed}
    assert SignalingPhase('awaiting-offer') is SignalingPhase.awaiting_offer


def test_candidate_wire_format() -> None:
    candidate = Candidate(
        'candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host',
        sdp_mid='0',
        sdp_mline_index=0,
    )
    data = candidate.to_dict()
    assert data == {
        'candidate': candidate.candidate,
        'sdpMid': '0',
        'sdpMLineIndex': 0,
        'usernameFragment': None,
    }
    assert Candidate.from_dict(data) == candidate


def test_candidate_missing_field() -> None:
    with pytest.raises(SignalingDecodeError):
        Candidate.from_dict({'sdpMid': '0'})


def test_session_wire_format() -> None:
    offer = SessionDescription(type='offer', sdp='v=0')
    session = Session('abc', '2024-01-01T00:00:00+00:00', offer=offer)
    data = session.to_dict()

    assert data == {
        'createdAt': '2024-01-01T00:00:00+00:00',
        'offer': {'type': 'offer', 'sdp': 'v=0'},
    }
    assert Session.from_dict('abc', data) == session


@pytest.mark.parametrize(
    'data',
    ({}, {'offer': {'type': 'offer', 'sdp': ''}}, ['createdAt']),
)
def test_session_malformed(data) -> None:
    with pytest.raises(SignalingDecodeError):
        Session.from_dict('abc', data)


def test_session_malformed_description() -> None:
    data = {'createdAt': 'now', 'answer': {'sdp': 'v=0'}}
    with pytest.raises(SignalingDecodeError):
        Session.from_dict('abc', data)


def test_decode_record() -> None:
    record = encode_record({'a': 1})
    assert ' ' not in record
    assert decode_record(record) == {'a': 1}
    assert decode_record(record.encode()) == {'a': 1}

    with pytest.raises(SignalingDecodeError, match='JSON'):
        decode_record('{')
    with pytest.raises(SignalingDecodeError, match='list'):
        decode_record('[]')


def test_decode_candidates_preserves_order() -> None:
    records = [
        json.dumps({'candidate': f'candidate:{i}'}).encode() for i in range(5)
    ]
    candidates = decode_candidates(records)
    assert [c.candidate for c in candidates] == [
        f'candidate:{i}' for i in range(5)
    ]


def test_endpoint_descriptor_from_dict() -> None:
    endpoint = EndpointDescriptor.from_dict(
        {
            'urls': ['turn:turn.example.com:3478?transport=udp'],
            'username': 'user',
            'credential': 'secret',
        },
        ttl=60,
    )
    assert endpoint.is_relay
    assert endpoint.ttl == 60
    assert 'secret' not in repr(endpoint)

    endpoint = EndpointDescriptor.from_dict({'urls': 'stun:example.com'})
    assert endpoint.urls == ('stun:example.com',)
    assert not endpoint.is_relay


@pytest.mark.parametrize('data', ({}, {'urls': []}, {'urls': [1]}))
def test_endpoint_descriptor_invalid(data) -> None:
    with pytest.raises(ValueError, match='urls'):
        EndpointDescriptor.from_dict(data)


def test_endpoint_config_from_urls() -> None:
    config = EndpointConfig.from_urls(['stun:a:1', 'stun:b:2'])
    assert len(config) == 2
    assert [e.urls for e in config] == [('stun:a:1',), ('stun:b:2',)]
    assert len(EndpointConfig()) == 0

"""Tests for the HMAC state token issued at login."""

from __future__ import annotations

import time

import jwt
import pytest

from lti_tool.errors import ErrorKind, InvalidStateError
from lti_tool.state import sign_state, verify_state

from conftest import CLIENT_ID, PLATFORM_ISS, STATE_SECRET, TARGET_LINK_URI


def _sign(**overrides):
    params = {
        "nonce": "n-1",
        "iss": PLATFORM_ISS,
        "client_id": CLIENT_ID,
        "target_link_uri": TARGET_LINK_URI,
        "expires_in": 600,
    }
    params.update(overrides)
    return sign_state(STATE_SECRET, **params)


def test_state_round_trip():
    state = verify_state(STATE_SECRET, _sign())

    assert state.nonce == "n-1"
    assert state.iss == PLATFORM_ISS
    assert state.client_id == CLIENT_ID
    assert state.target_link_uri == TARGET_LINK_URI
    assert state.exp > time.time()


def test_expired_state_is_rejected():
    token = _sign(now=int(time.time()) - 3600, expires_in=600)

    with pytest.raises(InvalidStateError) as excinfo:
        verify_state(STATE_SECRET, token)

    assert excinfo.value.kind is ErrorKind.INVALID_STATE
    assert excinfo.value.phase == "state"


def test_state_signed_with_another_secret_is_rejected():
    token = sign_state(
        b"another-secret-another-secret-000",
        nonce="n-1",
        iss=PLATFORM_ISS,
        client_id=CLIENT_ID,
        target_link_uri=TARGET_LINK_URI,
        expires_in=600,
    )

    with pytest.raises(InvalidStateError):
        verify_state(STATE_SECRET, token)


def test_state_without_nonce_is_rejected():
    token = jwt.encode({"exp": int(time.time()) + 600}, STATE_SECRET, algorithm="HS256")

    with pytest.raises(InvalidStateError):
        verify_state(STATE_SECRET, token)


def test_missing_state_is_rejected():
    with pytest.raises(InvalidStateError):
        verify_state(STATE_SECRET, "")

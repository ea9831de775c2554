"""Tests around :class:`ServiceTokenBroker` (client-credentials with JWT assertion)."""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from lti_tool import token
from lti_tool.errors import ConfigurationError, ErrorKind, TokenRequestFailedError, TokenResponseMalformedError
from lti_tool.session import create_session
from lti_tool.token import CLIENT_ASSERTION_TYPE, ServiceTokenBroker

from conftest import CLIENT_ID, TOKEN_URL, launch_payload


SCORE_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/score"
LINEITEM_SCOPE = "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem"


def test_client_assertion_claims(tool_keys):
    broker = ServiceTokenBroker(tool_keys)

    assertion = broker.create_client_assertion(CLIENT_ID, TOKEN_URL, now=1_700_000_000)

    header = jwt.get_unverified_header(assertion)
    assert header["kid"] == tool_keys.key_id
    assert header["alg"] == "RS256"
    claims = jwt.decode(
        assertion,
        tool_keys.public_key,
        algorithms=["RS256"],
        audience=TOKEN_URL,
        options={"verify_exp": False},
    )
    assert claims["iss"] == CLIENT_ID
    assert claims["sub"] == CLIENT_ID
    assert claims["aud"] == TOKEN_URL
    assert claims["exp"] - claims["iat"] == 300
    assert claims["jti"]


def test_each_assertion_has_a_fresh_jti(tool_keys):
    broker = ServiceTokenBroker(tool_keys)
    first = jwt.decode(broker.create_client_assertion(CLIENT_ID, TOKEN_URL), options={"verify_signature": False})
    second = jwt.decode(broker.create_client_assertion(CLIENT_ID, TOKEN_URL), options={"verify_signature": False})

    assert first["jti"] != second["jti"]


def test_bearer_token_request_form(monkeypatch, tool_keys) -> None:
    """The token request is a form post carrying the signed assertion."""

    requests: list[dict[str, Any]] = []

    class DummyResponse:
        status_code = 200
        text = '{"access_token": "fake-token"}'

        def json(self) -> dict[str, Any]:
            return {"access_token": "fake-token", "token_type": "Bearer"}

    class DummyAsyncClient:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            requests.append({"client_headers": kwargs.get("headers")})

        async def __aenter__(self) -> "DummyAsyncClient":
            return self

        async def __aexit__(self, exc_type, exc, tb) -> bool:  # type: ignore[override]
            return False

        async def post(self, url: str, data: Any = None, **_: Any):
            requests.append({"url": url, "data": data})
            return DummyResponse()

    monkeypatch.setattr(token.httpx, "AsyncClient", DummyAsyncClient)

    broker = ServiceTokenBroker(tool_keys)
    access_token = asyncio.run(broker.get_bearer_token(CLIENT_ID, TOKEN_URL, [SCORE_SCOPE, LINEITEM_SCOPE]))

    assert access_token == "fake-token"
    assert requests[0]["client_headers"] == {"User-Agent": "lti-tool/0.1"}
    sent = requests[1]
    assert sent["url"] == TOKEN_URL
    assert sent["data"]["grant_type"] == "client_credentials"
    assert sent["data"]["client_assertion_type"] == CLIENT_ASSERTION_TYPE
    assert sent["data"]["scope"] == f"{SCORE_SCOPE} {LINEITEM_SCOPE}"
    claims = jwt.decode(sent["data"]["client_assertion"], options={"verify_signature": False})
    assert claims["aud"] == TOKEN_URL


def test_bearer_token_for_session_uses_platform_token_url(tool, platform):
    session = create_session(launch_payload("n-1"))

    access_token = asyncio.run(tool.get_bearer_token(session, SCORE_SCOPE))

    assert access_token == "service-token"
    [request] = platform.requests_to(TOKEN_URL)
    form = parse_qs(request.content.decode())
    assert form["scope"] == [SCORE_SCOPE]
    assert request.headers["User-Agent"] == "lti-tool/0.1"


def test_user_agent_can_be_overridden(tool_keys, platform):
    broker = ServiceTokenBroker(tool_keys, transport=platform.transport, user_agent="my-app/2.0")

    assert asyncio.run(broker.get_bearer_token(CLIENT_ID, TOKEN_URL, SCORE_SCOPE)) == "service-token"

    [request] = platform.requests_to(TOKEN_URL)
    assert request.headers["User-Agent"] == "my-app/2.0"


def test_non_success_status_is_reported(tool, platform):
    platform.token_status = 401
    platform.token_body = {"error": "invalid_client"}
    session = create_session(launch_payload("n-1"))

    with pytest.raises(TokenRequestFailedError) as excinfo:
        asyncio.run(tool.get_bearer_token(session, SCORE_SCOPE))

    assert excinfo.value.kind is ErrorKind.TOKEN_REQUEST_FAILED
    assert excinfo.value.status_code == 401
    assert "invalid_client" in str(excinfo.value)


def test_missing_access_token_is_malformed(tool, platform):
    platform.token_body = {"token_type": "Bearer"}
    session = create_session(launch_payload("n-1"))

    with pytest.raises(TokenResponseMalformedError) as excinfo:
        asyncio.run(tool.get_bearer_token(session, SCORE_SCOPE))

    assert excinfo.value.kind is ErrorKind.TOKEN_RESPONSE_MALFORMED


def test_non_json_response_is_malformed(tool_keys):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>"))
    broker = ServiceTokenBroker(tool_keys, transport=transport)

    with pytest.raises(TokenResponseMalformedError):
        asyncio.run(broker.get_bearer_token(CLIENT_ID, TOKEN_URL, SCORE_SCOPE))


def test_unreachable_token_endpoint(tool_keys):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    broker = ServiceTokenBroker(tool_keys, transport=httpx.MockTransport(handler))

    with pytest.raises(TokenRequestFailedError) as excinfo:
        asyncio.run(broker.get_bearer_token(CLIENT_ID, TOKEN_URL, SCORE_SCOPE))

    assert excinfo.value.status_code is None


def test_session_from_unregistered_platform(tool):
    session = create_session(launch_payload("n-1", iss="https://unknown.example"))

    with pytest.raises(ConfigurationError):
        asyncio.run(tool.get_bearer_token(session, SCORE_SCOPE))

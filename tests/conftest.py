"""Shared fixtures: a fake platform, tool configuration and storage backends."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

import fakeredis
import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from lti_tool.claims import LTI_CLAIM
from lti_tool.config import ToolConfig
from lti_tool.keys import KeyMaterial
from lti_tool.models import ClientCreate, DeploymentCreate
from lti_tool.storage.memory_store import MemoryStorage
from lti_tool.storage.redis_store import RedisStorage
from lti_tool.storage.sql_store import SqlStorage
from lti_tool.tool import LTITool


PLATFORM_ISS = "https://platform.example"
CLIENT_ID = "c1"
DEPLOYMENT_ID = "d1"
AUTH_URL = "https://platform.example/auth"
TOKEN_URL = "https://platform.example/token"
JWKS_URL = "https://platform.example/.well-known/jwks.json"
TARGET_LINK_URI = "https://tool.example/content"
LAUNCH_URL = "https://tool.example/lti/launch"
STATE_SECRET = b"state-secret-for-tests-0123456789abcdef"
INSTRUCTOR_ROLE = "http://purl.imsglobal.org/vocab/lis/v2/membership#Instructor"
LEARNER_ROLE = "http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"
AGS_CLAIM = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"


class FakeClock:
    """Settable UTC clock for storage backends."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class PlatformStub:
    """Serves the platform JWKS and token endpoint through ``httpx.MockTransport``."""

    def __init__(self, keys: KeyMaterial) -> None:
        self.keys = keys
        self.requests: list[httpx.Request] = []
        self.jwks_status = 200
        self.token_status = 200
        self.token_body: Any = {"access_token": "service-token", "token_type": "Bearer", "expires_in": 3600}
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url.copy_with(query=None))
        if url == JWKS_URL:
            return httpx.Response(self.jwks_status, json=self.keys.jwks_document())
        if url == TOKEN_URL:
            return httpx.Response(self.token_status, json=self.token_body)
        return httpx.Response(404, json={"error": "not_found"})

    def requests_to(self, url: str) -> list[httpx.Request]:
        return [request for request in self.requests if str(request.url.copy_with(query=None)) == url]


def launch_payload(nonce: str, **overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    payload: dict[str, Any] = {
        "iss": PLATFORM_ISS,
        "sub": "u1",
        "aud": CLIENT_ID,
        "iat": now,
        "exp": now + 300,
        "nonce": nonce,
        "name": "Ada Lovelace",
        "given_name": "Ada",
        "family_name": "Lovelace",
        "email": "ada@example.com",
        LTI_CLAIM + "message_type": "LtiResourceLinkRequest",
        LTI_CLAIM + "version": "1.3.0",
        LTI_CLAIM + "deployment_id": DEPLOYMENT_ID,
        LTI_CLAIM + "target_link_uri": TARGET_LINK_URI,
        LTI_CLAIM + "roles": [INSTRUCTOR_ROLE],
        LTI_CLAIM + "resource_link": {"id": "rl-1", "title": "Week 1"},
        LTI_CLAIM + "context": {"id": "course-1", "label": "CS101", "title": "Intro to CS"},
        LTI_CLAIM + "tool_platform": {"guid": "platform-guid", "name": "Example LMS"},
        LTI_CLAIM + "custom": {"activity": "quiz-1"},
    }
    for key, value in overrides.items():
        if value is None:
            payload.pop(key, None)
        else:
            payload[key] = value
    return payload


def login_query(redirect_url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlsplit(redirect_url).query).items()}


def login_request(**overrides: Any) -> dict[str, Any]:
    data = {
        "iss": PLATFORM_ISS,
        "client_id": CLIENT_ID,
        "login_hint": "u1",
        "target_link_uri": TARGET_LINK_URI,
        "launch_url": LAUNCH_URL,
        "deployment_id": DEPLOYMENT_ID,
    }
    data.update(overrides)
    return data


async def register_platform(tool_or_storage: Any, deployment_id: str = DEPLOYMENT_ID) -> tuple[str, str]:
    client_id = await tool_or_storage.add_client(
        ClientCreate(
            name="Example LMS",
            iss=PLATFORM_ISS,
            client_id=CLIENT_ID,
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
            jwks_url=JWKS_URL,
        )
    )
    deployment = await tool_or_storage.add_deployment(client_id, DeploymentCreate(deployment_id=deployment_id))
    return client_id, deployment


@pytest.fixture(scope="session")
def platform_keys() -> KeyMaterial:
    return KeyMaterial.generate(key_id="platform-key-1")


@pytest.fixture(scope="session")
def tool_keys() -> KeyMaterial:
    return KeyMaterial.generate(key_id="main")


@pytest.fixture
def tool_config(tool_keys: KeyMaterial) -> ToolConfig:
    return ToolConfig(state_secret=STATE_SECRET, keys=tool_keys)


@pytest.fixture
def platform(platform_keys: KeyMaterial) -> PlatformStub:
    return PlatformStub(platform_keys)


@pytest.fixture
def tool(tool_config: ToolConfig, platform: PlatformStub) -> LTITool:
    storage = MemoryStorage()
    lti_tool = LTITool(tool_config, storage, transport=platform.transport)
    asyncio.run(register_platform(lti_tool))
    return lti_tool


@pytest.fixture
def sign_launch(platform_keys: KeyMaterial) -> Callable[..., str]:
    def _sign(nonce: str, **overrides: Any) -> str:
        return platform_keys.sign(launch_payload(nonce, **overrides))

    return _sign


StorageFactory = Callable[..., Awaitable[Any]]


@pytest.fixture(params=["memory", "redis", "sql"])
def storage_factory(request: pytest.FixtureRequest, tmp_path) -> StorageFactory:
    """Build one backend inside the running event loop."""

    backend = request.param

    async def _build(**kwargs: Any) -> Any:
        if backend == "memory":
            return MemoryStorage(**kwargs)
        if backend == "redis":
            client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
            return RedisStorage(client, **kwargs)
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lti.db'}", poolclass=NullPool)
        storage = SqlStorage(engine, **kwargs)
        await storage.create_schema()
        return storage

    _build.backend = backend  # type: ignore[attr-defined]
    return _build

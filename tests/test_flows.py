"""End-to-end login and launch against every storage backend."""

from __future__ import annotations

import asyncio

import pytest

from lti_tool.errors import LTIError, NonceReplayError
from lti_tool.tool import LTITool

from conftest import login_query, login_request, register_platform


def test_login_launch_and_session(storage_factory, tool_config, platform, sign_launch):
    async def scenario():
        storage = await storage_factory()
        tool = LTITool(tool_config, storage, transport=platform.transport)
        await register_platform(tool)

        query = login_query(await tool.handle_login(login_request()))
        id_token = sign_launch(query["nonce"])
        claims = await tool.verify_launch(id_token, query["state"])
        session = await tool.create_session(claims)

        stored = await tool.get_session(session.id)
        assert stored.user.id == "u1"
        assert stored.platform.deployment_id == "d1"
        assert stored.is_instructor

        with pytest.raises(NonceReplayError):
            await tool.verify_launch(id_token, query["state"])

    asyncio.run(scenario())


def test_concurrent_replays_admit_a_single_launch(storage_factory, tool_config, platform, sign_launch):
    async def scenario():
        storage = await storage_factory()
        tool = LTITool(tool_config, storage, transport=platform.transport)
        await register_platform(tool)
        query = login_query(await tool.handle_login(login_request()))
        id_token = sign_launch(query["nonce"])

        results = await asyncio.gather(
            *(tool.verify_launch(id_token, query["state"]) for _ in range(5)),
            return_exceptions=True,
        )

        accepted = [result for result in results if not isinstance(result, BaseException)]
        rejected = [result for result in results if isinstance(result, BaseException)]
        assert len(accepted) == 1
        assert all(isinstance(error, NonceReplayError) for error in rejected)
        assert all(isinstance(error, LTIError) for error in rejected)

    asyncio.run(scenario())


def test_admin_changes_apply_to_next_login(storage_factory, tool_config, platform):
    async def scenario():
        storage = await storage_factory()
        tool = LTITool(tool_config, storage, transport=platform.transport)
        client_id, _ = await register_platform(tool)

        await tool.update_client(client_id, {"authUrl": "https://platform.example/new-auth"})
        redirect_url = await tool.handle_login(login_request())
        assert redirect_url.startswith("https://platform.example/new-auth?")

        await tool.delete_client(client_id)
        assert await tool.list_clients() == []

    asyncio.run(scenario())

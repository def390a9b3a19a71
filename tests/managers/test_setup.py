from __future__ import annotations

import pytest

from frolf_discord.bus import topics
from frolf_discord.bus.envelope import payload_dict
from frolf_discord.integrations.discord.errors import DiscordTransientError
from frolf_discord.integrations.discord.registry import DM_ONLY_MESSAGE
from frolf_discord.managers.setup import SETUP_COMPLETE, SetupManager


@pytest.fixture()
def completed_guilds() -> list[str]:
    return []


@pytest.fixture()
def setup_manager(deps, registry, router, completed_guilds) -> SetupManager:
    async def on_completed(guild_id: str) -> None:
        completed_guilds.append(guild_id)

    manager = SetupManager(deps, on_setup_completed=on_completed)
    manager.register(registry)
    manager.register_replies(router)
    registry.freeze()
    return manager


@pytest.mark.anyio
async def test_setup_runs_without_guild_config(
    setup_manager, registry, session, bus, store, config_requests, make_interaction
) -> None:
    session.guilds["G1"] = {"id": "G1", "name": "Pier Park DG"}
    await registry.handle_interaction(make_interaction(2, name="frolf-setup"))

    assert config_requests == []
    assert session.method_names() == ["interaction_respond", "get_guild"]
    assert session.last_response() == {"type": 5, "data": {"flags": 64}}
    request = bus.published_on(topics.GUILD_SETUP_REQUESTED)[0]
    assert payload_dict(request) == {
        "guild_id": "G1",
        "guild_name": "Pier Park DG",
        "requested_by": "U1",
    }
    assert await store.get(request.correlation_id) is not None


@pytest.mark.anyio
async def test_guild_lookup_failure_still_publishes(
    setup_manager, registry, session, bus, make_interaction
) -> None:
    session.failures["get_guild"] = [DiscordTransientError("timeout")]
    await registry.handle_interaction(make_interaction(2, name="frolf-setup"))

    request = bus.published_on(topics.GUILD_SETUP_REQUESTED)[0]
    assert payload_dict(request)["guild_name"] == ""


@pytest.mark.anyio
async def test_setup_in_dm_is_rejected(setup_manager, registry, session, bus, make_interaction) -> None:
    await registry.handle_interaction(
        make_interaction(2, name="frolf-setup", guild_id=None)
    )
    response = session.last_response()
    assert response is not None
    assert response["data"]["content"] == DM_ONLY_MESSAGE
    assert bus.published == []


@pytest.mark.anyio
async def test_completed_reply_refreshes_guild(
    setup_manager, resolver, configured_guild, completed_guilds, make_reply
) -> None:
    reply = make_reply(topics.GUILD_SETUP_COMPLETED, {"guild_id": "G1"})
    assert await setup_manager.render_completed(reply) == SETUP_COMPLETE
    assert resolver.cached("G1") is None
    assert completed_guilds == ["G1"]


@pytest.mark.anyio
async def test_failed_reply_renders_reason(setup_manager, make_reply) -> None:
    reply = make_reply(topics.GUILD_SETUP_FAILED, {"error": "missing permissions"})
    text = await setup_manager.render_failed(reply)
    assert "**Reason:** missing permissions" in text

from __future__ import annotations

import pytest

from frolf_discord.bus import topics
from frolf_discord.bus.envelope import payload_dict
from frolf_discord.managers.round import (
    ROUND_REQUEST_RECEIVED,
    RoundManager,
    build_create_round_modal,
    validate_round_form,
)


@pytest.fixture()
def rounds(deps, registry, router) -> RoundManager:
    manager = RoundManager(deps)
    manager.register(registry)
    manager.register_replies(router)
    registry.freeze()
    return manager


@pytest.mark.anyio
async def test_createround_opens_modal(
    rounds, registry, session, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(2, name="createround", roles=["R-player"])
    )
    response = session.last_response()
    assert response is not None
    assert response["type"] == 9
    assert response["data"] == build_create_round_modal()


@pytest.mark.anyio
async def test_modal_submit_publishes_round_request(
    rounds, registry, session, bus, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id="create_round_modal",
            roles=["R-player"],
            values={
                "title": " Sunday Doubles ",
                "description": "",
                "start_time": "tomorrow 6pm",
                "timezone": "America/Chicago",
                "location": "Pier Park",
            },
        )
    )

    response = session.last_response()
    assert response is not None
    assert response["data"]["content"] == ROUND_REQUEST_RECEIVED
    request = bus.published_on(topics.ROUND_CREATION_REQUESTED)[0]
    assert payload_dict(request) == {
        "guild_id": "G1",
        "user_id": "U1",
        "title": "Sunday Doubles",
        "start_time": "tomorrow 6pm America/Chicago",
        "location": "Pier Park",
        "description": "",
        "channel_id": "CH1",
    }


@pytest.mark.anyio
async def test_invalid_form_is_rejected(
    rounds, registry, session, bus, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5, custom_id="create_round_modal", roles=["R-player"], values={"title": ""}
        )
    )
    response = session.last_response()
    assert response is not None
    content = response["data"]["content"]
    assert "Title is required." in content
    assert "Start Time is required." in content
    assert bus.published == []


def test_title_length_limit() -> None:
    errors = validate_round_form({"title": "x" * 101, "start_time": "now"})
    assert errors == ["Title must be less than 100 characters."]
    assert validate_round_form({"title": "x" * 100, "start_time": "now"}) == []


@pytest.mark.anyio
async def test_round_replies(rounds, make_reply) -> None:
    created = make_reply(topics.ROUND_CREATED, {"round_id": "R-42"})
    assert await rounds.render_created(created) == (
        "✅ Round created successfully! Round ID: R-42"
    )
    failed = make_reply(topics.ROUND_CREATION_FAILED, {"reason": "start time in the past"})
    assert await rounds.render_failed(failed) == (
        "❌ Round creation failed: start time in the past"
    )

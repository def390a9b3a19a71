from __future__ import annotations

import base64

import pytest

from frolf_discord.bus import topics
from frolf_discord.bus.base import PublishError
from frolf_discord.bus.envelope import META_CHANNEL_ID, META_MESSAGE_ID, payload_dict
from frolf_discord.core.pending_uploads import PendingUpload, PendingUploadMap
from frolf_discord.integrations.discord.errors import DiscordTransientError
from frolf_discord.managers.scorecard_upload import (
    DOWNLOAD_FAILED,
    FILE_PROMPT_ACK,
    FILE_PUBLISH_FAILED,
    FILE_TOO_LARGE,
    INVALID_URL_MESSAGE,
    NO_PENDING_UPLOAD,
    RATE_LIMITED,
    IngressRateLimiter,
    InvalidScorecardURL,
    ScorecardUploadManager,
    build_scorecard_modal,
    is_scorecard_file,
    validate_udisc_url,
)

ROUND_ID = "3f2c1a5e-8d4b-4c6e-9a1f-2b3c4d5e6f70"
CSV_URL = "https://cdn.discordapp.test/attachments/card.csv"


@pytest.fixture()
def make_interaction(make_interaction):
    """Scorecard interactions come from registered players unless a test says otherwise."""

    def build(*args, **kwargs):
        kwargs.setdefault("roles", ["R-player"])
        return make_interaction(*args, **kwargs)

    return build


@pytest.fixture()
def pending(logger, clock) -> PendingUploadMap:
    return PendingUploadMap(logger=logger, now_fn=clock)


@pytest.fixture()
def scorecards(deps, registry, router, pending, clock) -> ScorecardUploadManager:
    manager = ScorecardUploadManager(
        deps, pending=pending, rate_limiter=IngressRateLimiter(5, now_fn=clock)
    )
    manager.register(registry)
    manager.register_replies(router)
    registry.freeze()
    return manager


async def _expect_upload(pending: PendingUploadMap) -> None:
    await pending.remember(
        "U1",
        "dm-U1",
        PendingUpload(
            round_id=ROUND_ID,
            guild_id="G1",
            notes="front nine",
            source_message_id="M-event",
            event_message_id="M-event",
        ),
    )


def _dm_message(filename: str = "card.csv", size: int = 11, **overrides) -> dict:
    message = {
        "id": "MSG1",
        "channel_id": "dm-U1",
        "author": {"id": "U1"},
        "attachments": [{"filename": filename, "url": CSV_URL, "size": size}],
    }
    message.update(overrides)
    return message


def _channel_texts(session) -> list[str]:
    return [
        call.kwargs["payload"]["content"]
        for call in session.calls_to("send_channel_message")
    ]


@pytest.mark.parametrize(
    "url",
    [
        "https://udisc.com/scorecards/abc",
        " https://www.udisc.com/scorecards/abc ",
        "https://UDISC.com/x",
    ],
)
def test_accepts_udisc_urls(url) -> None:
    assert validate_udisc_url(url) == url.strip()


@pytest.mark.parametrize(
    "url",
    [
        "",
        "udisc.com/scorecards/abc",
        "http://udisc.com/scorecards/abc",
        "https://udisc.com.evil.test/x",
        "https://notudisc.com/x",
        "https://10.0.0.1/x",
        "https://[::1]/x",
    ],
)
def test_rejects_other_urls(url) -> None:
    with pytest.raises(InvalidScorecardURL):
        validate_udisc_url(url)


@pytest.mark.parametrize(
    ("filename", "expected"),
    [("card.csv", True), ("CARD.XLSX", True), ("card.xls", False), ("photo.png", False)],
)
def test_is_scorecard_file(filename, expected) -> None:
    assert is_scorecard_file(filename) is expected


@pytest.mark.anyio
async def test_button_opens_modal(
    scorecards, registry, session, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(3, custom_id=f"scorecard_upload|{ROUND_ID}")
    )
    response = session.last_response()
    assert response is not None
    assert response["type"] == 9
    assert response["data"] == build_scorecard_modal(ROUND_ID)
    assert response["data"]["custom_id"] == f"scorecard_upload_modal|{ROUND_ID}"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("type_", "custom_id"),
    [(3, f"scorecard_upload|{ROUND_ID}"), (5, f"scorecard_upload_modal|{ROUND_ID}")],
)
async def test_members_without_player_role_are_denied(
    scorecards, registry, session, bus, configured_guild, make_interaction, type_, custom_id
) -> None:
    await registry.handle_interaction(
        make_interaction(
            type_,
            custom_id=custom_id,
            values={"udisc_url_input": "https://udisc.com/scorecards/abc"},
            roles=[],
        )
    )
    response = session.last_response()
    assert response is not None
    assert response["data"]["content"] == "❌ You need the **Player** role or higher to use this."
    assert bus.published == []


@pytest.mark.anyio
async def test_url_submission_publishes_import(
    scorecards, registry, session, bus, store, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id=f"scorecard_upload_modal|{ROUND_ID}",
            values={
                "udisc_url_input": "https://udisc.com/scorecards/abc",
                "notes_input": "windy",
            },
            message_id="M-event",
        )
    )

    request = bus.published_on(topics.SCORECARD_URL_REQUESTED)[0]
    payload = payload_dict(request)
    import_id = payload["import_id"]
    assert request.correlation_id == import_id
    assert payload["round_id"] == ROUND_ID
    assert payload["udisc_url"] == "https://udisc.com/scorecards/abc"
    assert payload["notes"] == "windy"
    assert payload["message_id"] == "M-event"
    assert payload["channel_id"] == "CH1"
    assert await store.get(import_id) is not None

    response = session.last_response()
    assert response is not None
    assert response["data"]["content"].startswith(
        f"✅ Scorecard import started! Import ID: `{import_id}`"
    )


@pytest.mark.anyio
async def test_url_publish_failure_edits_ack(
    scorecards, registry, session, bus, store, configured_guild, make_interaction
) -> None:
    bus.fail_next_publish = PublishError("redis down")
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id=f"scorecard_upload_modal|{ROUND_ID}",
            values={"udisc_url_input": "https://udisc.com/scorecards/abc"},
        )
    )
    edit = session.calls_to("edit_original_response")[0].kwargs
    assert edit["payload"]["content"].startswith("Scorecard upload failed:")
    assert len(store) == 0


@pytest.mark.anyio
async def test_invalid_url_is_rejected(
    scorecards, registry, session, bus, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id=f"scorecard_upload_modal|{ROUND_ID}",
            values={"udisc_url_input": "http://udisc.com/scorecards/abc"},
        )
    )
    response = session.last_response()
    assert response is not None
    assert response["data"]["content"] == f"Scorecard upload failed: {INVALID_URL_MESSAGE}"
    assert bus.published == []


@pytest.mark.anyio
async def test_invalid_round_id_is_rejected(
    scorecards, registry, session, bus, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id="scorecard_upload_modal|round-7",
            values={"udisc_url_input": "https://udisc.com/scorecards/abc"},
        )
    )
    response = session.last_response()
    assert response is not None
    assert "no longer valid" in response["data"]["content"]
    assert bus.published == []


@pytest.mark.anyio
async def test_empty_url_prompts_for_file_by_dm(
    scorecards, registry, session, pending, configured_guild, make_interaction
) -> None:
    await registry.handle_interaction(
        make_interaction(
            5,
            custom_id=f"scorecard_upload_modal|{ROUND_ID}",
            values={"udisc_url_input": "", "notes_input": "front nine"},
            message_id="M-event",
        )
    )

    prompt = session.calls_to("send_channel_message")[0].kwargs
    assert prompt["channel_id"] == "dm-U1"
    assert f"Round ID: `{ROUND_ID}`" in prompt["payload"]["content"]
    assert "expires in 5 minutes" in prompt["payload"]["content"]
    response = session.last_response()
    assert response is not None
    assert response["data"]["content"] == FILE_PROMPT_ACK
    assert len(pending) == 1


@pytest.mark.anyio
async def test_dm_failure_forgets_pending_upload(
    scorecards, registry, session, pending, configured_guild, make_interaction
) -> None:
    session.failures["send_channel_message"] = [DiscordTransientError("blocked")]
    await registry.handle_interaction(
        make_interaction(
            5, custom_id=f"scorecard_upload_modal|{ROUND_ID}", values={}
        )
    )
    response = session.last_response()
    assert response is not None
    assert response["data"]["content"].endswith("Please check your privacy settings.")
    assert len(pending) == 0


@pytest.mark.anyio
async def test_small_file_is_inlined(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)
    session.attachments[CSV_URL] = b"player,score\nU1,54\n"

    result = await scorecards.handle_message_create(_dm_message())

    assert result.ok
    upload = bus.published_on(topics.SCORECARD_UPLOADED)[0]
    payload = payload_dict(upload)
    assert payload["import_id"] == upload.correlation_id
    assert base64.b64decode(payload["file_data"]) == b"player,score\nU1,54\n"
    assert "file_url" not in payload
    assert payload["round_id"] == ROUND_ID
    assert payload["guild_id"] == "G1"
    assert payload["message_id"] == "M-event"
    assert payload["notes"] == "front nine"
    assert upload.metadata[META_CHANNEL_ID] == "dm-U1"
    assert upload.metadata[META_MESSAGE_ID] == "MSG1"
    assert _channel_texts(session)[-1].startswith("✅ Scorecard uploaded successfully!")
    assert len(pending) == 0


@pytest.mark.anyio
async def test_large_file_is_passed_by_url(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)

    await scorecards.handle_message_create(_dm_message(size=300 * 1024))

    assert session.calls_to("download_attachment") == []
    payload = payload_dict(bus.published_on(topics.SCORECARD_UPLOADED)[0])
    assert payload["file_url"] == CSV_URL
    assert "file_data" not in payload


@pytest.mark.anyio
async def test_oversized_file_keeps_pending_upload(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)

    result = await scorecards.handle_message_create(_dm_message(size=11 * 1024 * 1024))

    assert result.failure == "attachment too large"
    assert _channel_texts(session) == [f"❌ {FILE_TOO_LARGE}"]
    assert bus.published == []
    assert len(pending) == 1


@pytest.mark.anyio
async def test_download_failure_keeps_pending_upload(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)
    session.failures["download_attachment"] = [DiscordTransientError("connection reset")]

    await scorecards.handle_message_create(_dm_message())

    assert _channel_texts(session) == [f"❌ {DOWNLOAD_FAILED}"]
    assert len(pending) == 1


@pytest.mark.anyio
async def test_publish_failure_keeps_pending_upload(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)
    bus.fail_next_publish = PublishError("redis down")

    await scorecards.handle_message_create(_dm_message())

    assert _channel_texts(session)[-1] == f"❌ {FILE_PUBLISH_FAILED}"
    assert len(pending) == 1


@pytest.mark.anyio
async def test_expired_pending_upload_is_not_used(
    scorecards, session, bus, pending, clock
) -> None:
    await _expect_upload(pending)
    clock.advance(5 * 60 + 1)

    result = await scorecards.handle_message_create(_dm_message())

    assert result.failure == "no pending upload"
    assert _channel_texts(session) == [f"❌ {NO_PENDING_UPLOAD}"]
    assert bus.published == []


@pytest.mark.anyio
async def test_pending_upload_is_scoped_to_channel(scorecards, session, bus, pending) -> None:
    await _expect_upload(pending)

    await scorecards.handle_message_create(_dm_message(channel_id="C-general"))

    assert _channel_texts(session) == [f"❌ {NO_PENDING_UPLOAD}"]
    assert len(pending) == 1


@pytest.mark.anyio
async def test_messages_without_scorecards_are_ignored(scorecards, session, pending) -> None:
    await _expect_upload(pending)

    await scorecards.handle_message_create(_dm_message(filename="photo.png"))
    await scorecards.handle_message_create(_dm_message(attachments=[]))
    await scorecards.handle_message_create(
        _dm_message(author={"id": "BOT", "bot": True})
    )

    assert session.calls == []
    assert len(pending) == 1


@pytest.mark.anyio
async def test_attachment_flood_is_rate_limited(scorecards, session, bus, pending) -> None:
    for _ in range(5):
        await scorecards.handle_message_create(_dm_message())
    result = await scorecards.handle_message_create(_dm_message())

    assert result.failure == "rate limited"
    assert _channel_texts(session)[-1] == f"❌ {RATE_LIMITED}"


@pytest.mark.anyio
async def test_message_dispatch_reaches_upload_handler(
    scorecards, registry, session, bus, pending
) -> None:
    await _expect_upload(pending)
    session.attachments[CSV_URL] = b"csv"

    registry.dispatch_message(_dm_message())
    assert await registry.wait_idle(1.0)

    assert len(bus.published_on(topics.SCORECARD_UPLOADED)) == 1


def test_rate_limiter_window(clock) -> None:
    limiter = IngressRateLimiter(2, now_fn=clock)
    assert limiter.allow("G1", "U1")
    assert limiter.allow("G1", "U1")
    assert not limiter.allow("G1", "U1")
    assert limiter.allow("G1", "U2")
    clock.advance(60)
    assert limiter.allow("G1", "U1")


def test_rate_limiter_disabled(clock) -> None:
    limiter = IngressRateLimiter(0, now_fn=clock)
    assert all(limiter.allow("G1", "U1") for _ in range(50))


@pytest.mark.anyio
async def test_import_failure_reply(scorecards, make_reply) -> None:
    reply = make_reply(topics.SCORECARD_IMPORT_FAILED, {"error": "no players matched"})
    assert await scorecards.render_import_failed(reply) == (
        "❌ Scorecard import failed: no players matched"
    )
    blank = make_reply(topics.ROUND_SCORES_PROCESSED_FAILED, {})
    assert "unknown error" in await scorecards.render_import_failed(blank)

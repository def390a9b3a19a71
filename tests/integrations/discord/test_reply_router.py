from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

import pytest

from frolf_discord.bus import topics
from frolf_discord.bus.base import Delivery
from frolf_discord.bus.envelope import Envelope, build_envelope
from frolf_discord.core.guild_config import ConfigNotFoundError
from frolf_discord.integrations.discord.errors import (
    DiscordAPIError,
    DiscordTransientError,
)
from frolf_discord.integrations.discord.interactions import (
    InteractionHandle,
    InteractionKind,
)
from frolf_discord.integrations.discord.reply_router import (
    OUTCOME_CHANNEL,
    OUTCOME_CONFIG,
    OUTCOME_DROPPED,
    OUTCOME_EDITED,
    OUTCOME_HANDLED,
    OUTCOME_RETRY,
    OUTCOME_SUPPRESSED,
    ReplyContext,
)

HANDLE = InteractionHandle(
    interaction_id="I1",
    token="T1",
    kind=InteractionKind.MODAL_SUBMIT,
    guild_id="G1",
    user_id="U1",
    channel_id="CH1",
)


def _reply(
    topic: str,
    payload: dict,
    *,
    correlation_id: str = "corr-1",
    channel_id: str = "",
    message_id: str = "",
) -> Envelope:
    extra = {}
    if channel_id:
        extra["channel_id"] = channel_id
    if message_id:
        extra["message_id"] = message_id
    return build_envelope(
        {"guild_id": "G1", **payload},
        topic,
        guild_id="G1",
        require_user=False,
        correlation_id=correlation_id,
        extra_metadata=extra,
    )


class _DeliveryLog:
    def __init__(self) -> None:
        self.acks = 0
        self.nacks = 0

    def wrap(self, envelope: Envelope) -> Delivery:
        async def ack() -> None:
            self.acks += 1

        async def nack() -> None:
            self.nacks += 1

        return Delivery(topic=envelope.topic, envelope=envelope, ack=ack, nack=nack)


def _static_renderer(text: Optional[str]):
    seen: list[ReplyContext] = []

    async def render(reply: ReplyContext) -> Optional[str]:
        seen.append(reply)
        return text

    render.seen = seen  # type: ignore[attr-defined]
    return render


@pytest.mark.anyio
async def test_suppressed_failure_is_acked_without_touching_discord(
    router, store, session
) -> None:
    renderer = _static_renderer("should not be shown")
    router.register(topics.SCORE_UPDATE_FAILED, renderer)
    await store.set("corr-1", HANDLE)
    log = _DeliveryLog()

    outcome = await router.handle_delivery(
        log.wrap(
            _reply(
                topics.SCORE_UPDATE_FAILED,
                {"reason": "Score record NOT FOUND for round r-1"},
            )
        )
    )

    assert outcome == OUTCOME_SUPPRESSED
    assert session.calls == []
    assert renderer.seen == []
    assert (log.acks, log.nacks) == (1, 0)
    assert await store.get("corr-1") is None


@pytest.mark.anyio
async def test_parked_handle_gets_original_response_edited(
    router, store, session
) -> None:
    renderer = _static_renderer("🎉 Signup successful! Welcome!")
    router.register(topics.USER_CREATED, renderer)
    await store.set("corr-1", HANDLE)
    log = _DeliveryLog()

    outcome = await router.handle_delivery(
        log.wrap(_reply(topics.USER_CREATED, {"user_id": "U1"}))
    )

    assert outcome == OUTCOME_EDITED
    edit = session.calls_to("edit_original_response")[0].kwargs
    assert edit == {"token": "T1", "payload": {"content": "🎉 Signup successful! Welcome!"}}
    assert renderer.seen[0].handle == HANDLE
    assert renderer.seen[0].payload.user_id == "U1"
    assert await store.get("corr-1") is None
    assert log.acks == 1


@pytest.mark.anyio
async def test_evicted_handle_falls_back_to_channel_message(router, session) -> None:
    router.register(topics.ROUND_CREATED, _static_renderer("Round created"))

    outcome = await router.process(
        topics.ROUND_CREATED,
        _reply(topics.ROUND_CREATED, {"round_id": "r-1"}, channel_id="C9", message_id="M9"),
    )

    assert outcome == OUTCOME_CHANNEL
    sent = session.calls_to("send_channel_message")[0].kwargs
    assert sent["channel_id"] == "C9"
    assert sent["payload"] == {
        "content": "Round created",
        "message_reference": {"message_id": "M9", "fail_if_not_exists": False},
    }
    assert "flags" not in sent["payload"]


@pytest.mark.anyio
async def test_evicted_handle_without_channel_is_dropped(router, session) -> None:
    router.register(topics.ROUND_CREATED, _static_renderer("Round created"))

    outcome = await router.process(
        topics.ROUND_CREATED, _reply(topics.ROUND_CREATED, {"round_id": "r-1"})
    )

    assert outcome == OUTCOME_DROPPED
    assert session.calls == []


@pytest.mark.anyio
async def test_reply_without_correlation_is_dropped(router, session) -> None:
    renderer = _static_renderer("x")
    router.register(topics.USER_CREATED, renderer)
    envelope = Envelope(
        uuid="e1",
        payload=b'{"guild_id": "G1"}',
        metadata={"topic": topics.USER_CREATED, "guild_id": "G1"},
    )

    assert await router.process(topics.USER_CREATED, envelope) == OUTCOME_DROPPED
    assert renderer.seen == []


@pytest.mark.anyio
async def test_backend_request_without_correlation_reaches_renderer(
    router, session
) -> None:
    renderer = _static_renderer(None)
    router.register(topics.USER_PROFILE_SYNC_REQUEST, renderer)
    envelope = Envelope(
        uuid="e2",
        payload=b'{"guild_id": "G1", "user_id": "U1"}',
        metadata={"topic": topics.USER_PROFILE_SYNC_REQUEST, "guild_id": "G1"},
    )

    outcome = await router.process(topics.USER_PROFILE_SYNC_REQUEST, envelope)

    assert outcome == OUTCOME_HANDLED
    assert len(renderer.seen) == 1
    assert session.calls == []


@pytest.mark.anyio
async def test_unknown_topic_is_dropped(router) -> None:
    outcome = await router.process(
        "some.other.topic", _reply("some.other.topic", {})
    )
    assert outcome == OUTCOME_DROPPED


@pytest.mark.anyio
async def test_config_events_update_resolver(router, resolver) -> None:
    outcome = await router.process(
        topics.GUILD_CONFIG_RETRIEVED,
        _reply(
            topics.GUILD_CONFIG_RETRIEVED,
            {
                "config": {
                    "signup_channel_id": "C-signup",
                    "registered_role_id": "R1",
                    "editor_role_id": "R2",
                    "admin_role_id": "R3",
                    "setup_complete": True,
                    "updated_at": 5,
                }
            },
        ),
    )
    assert outcome == OUTCOME_CONFIG
    cached = resolver.cached("G1")
    assert cached is not None
    assert cached.is_complete

    outcome = await router.process(
        topics.GUILD_CONFIG_DELETED, _reply(topics.GUILD_CONFIG_DELETED, {})
    )
    assert outcome == OUTCOME_CONFIG
    assert resolver.cached("G1") is None


@pytest.mark.anyio
async def test_retrieval_failure_fails_waiters(router, resolver) -> None:
    waiter = asyncio.create_task(resolver.get("G1"))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    await router.process(
        topics.GUILD_CONFIG_RETRIEVAL_FAILED,
        _reply(topics.GUILD_CONFIG_RETRIEVAL_FAILED, {"reason": "guild config not found"}),
    )

    with pytest.raises(ConfigNotFoundError):
        await waiter


@pytest.mark.anyio
async def test_transient_edit_failure_is_redelivered(router, store, session) -> None:
    router.register(topics.USER_CREATED, _static_renderer("done"))
    await store.set("corr-1", HANDLE)
    session.failures["edit_original_response"] = [
        DiscordTransientError("rate limited", status_code=429)
    ]
    log = _DeliveryLog()
    envelope = _reply(topics.USER_CREATED, {})

    assert await router.handle_delivery(log.wrap(envelope)) == OUTCOME_RETRY
    assert (log.acks, log.nacks) == (0, 1)
    assert await store.get("corr-1") == HANDLE

    assert await router.handle_delivery(log.wrap(envelope)) == OUTCOME_EDITED
    assert (log.acks, log.nacks) == (1, 1)


@pytest.mark.anyio
async def test_expired_webhook_is_acked_and_forgotten(router, store, session) -> None:
    router.register(topics.USER_CREATED, _static_renderer("done"))
    await store.set("corr-1", HANDLE)
    session.failures["edit_original_response"] = [
        DiscordAPIError("Unknown Webhook", status_code=404)
    ]
    log = _DeliveryLog()

    outcome = await router.handle_delivery(log.wrap(_reply(topics.USER_CREATED, {})))

    assert outcome == OUTCOME_EDITED
    assert log.acks == 1
    assert await store.get("corr-1") is None


@pytest.mark.anyio
async def test_renderer_errors_are_acked(router, store) -> None:
    async def broken(_reply: ReplyContext) -> str:
        raise RuntimeError("template blew up")

    router.register(topics.USER_CREATED, broken)
    log = _DeliveryLog()

    outcome = await router.handle_delivery(log.wrap(_reply(topics.USER_CREATED, {})))

    assert outcome == OUTCOME_DROPPED
    assert (log.acks, log.nacks) == (1, 0)


def test_duplicate_renderer_registration_fails(router) -> None:
    router.register(topics.USER_CREATED, _static_renderer("a"))
    with pytest.raises(ValueError):
        router.register(topics.USER_CREATED, _static_renderer("b"))
    assert topics.USER_CREATED in router.topics
    assert set(topics.GUILD_CONFIG_TOPICS) <= set(router.topics)


@pytest.mark.anyio
async def test_run_consumes_replies_from_bus(router, bus, store, session) -> None:
    router.register(topics.USER_CREATED, _static_renderer("done"))
    await store.set("corr-1", HANDLE)

    task = asyncio.create_task(router.run())
    await asyncio.sleep(0)
    await bus.publish(topics.USER_CREATED, _reply(topics.USER_CREATED, {}))

    for _ in range(100):
        if session.calls:
            break
        await asyncio.sleep(0.01)

    await router.close()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    assert session.method_names() == ["edit_original_response"]
    assert len(bus.acked) == 1

from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from frolf_discord.bus import topics
from frolf_discord.bus.base import PublishError
from frolf_discord.bus.envelope import Envelope, build_envelope
from frolf_discord.bus.redis_streams import RedisStreamBus


def _seq(entry_id: str) -> int:
    return int(entry_id.split("-")[0])


class _FakeRedis:
    """Just enough of redis.asyncio.Redis for stream consumer groups."""

    def __init__(self) -> None:
        self.keys: dict[str, str] = {}
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        # (stream, group) -> {"delivered": index, "pending": {entry_id: consumer}}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self.acked: list[tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None
        self._next_id = 0
        self.closed = False

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int = 0):
        if self.fail_with is not None:
            raise self.fail_with
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    async def xadd(self, name: str, fields: dict[str, str], **_kwargs: Any) -> str:
        self._next_id += 1
        entry_id = f"{self._next_id}-0"
        self.streams.setdefault(name, []).append((entry_id, dict(fields)))
        return entry_id

    async def xgroup_create(
        self, name: str, group: str, id: str = "$", mkstream: bool = False
    ) -> bool:
        if (name, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, group)] = {"delivered": 0, "pending": {}}
        return True

    async def xreadgroup(
        self,
        group: str,
        consumer: str,
        streams: dict[str, str],
        count: Optional[int] = None,
        block: Optional[int] = None,
    ) -> list[Any]:
        response: list[Any] = []
        for name, cursor in streams.items():
            state = self.groups[(name, group)]
            entries = self.streams.get(name, [])
            if cursor == ">":
                fresh = entries[state["delivered"] :][: count or None]
                state["delivered"] += len(fresh)
                for entry_id, _fields in fresh:
                    state["pending"][entry_id] = consumer
                if fresh:
                    response.append([name, fresh])
            else:
                pending = [
                    (entry_id, fields)
                    for entry_id, fields in entries
                    if state["pending"].get(entry_id) == consumer
                    and _seq(entry_id) > _seq(cursor)
                ]
                response.append([name, pending[: count or None]])
        if not response and block is not None:
            await asyncio.sleep(0.01)
        return response

    async def xack(self, name: str, group: str, *ids: str) -> int:
        state = self.groups[(name, group)]
        removed = 0
        for entry_id in ids:
            if state["pending"].pop(entry_id, None) is not None:
                removed += 1
                self.acked.append((name, entry_id))
        return removed

    async def aclose(self) -> None:
        self.closed = True


def _bus(fake: _FakeRedis, logger) -> RedisStreamBus:
    return RedisStreamBus(
        fake,  # type: ignore[arg-type]
        logger=logger,
        stream_prefix="frolf:",
        consumer_name="discord-1",
    )


def _envelope() -> Envelope:
    return build_envelope(
        {"guild_id": "G1", "user_id": "U1"},
        topics.USER_CREATED,
        guild_id="G1",
        user_id="U1",
    )


@pytest.mark.anyio
async def test_publish_appends_to_prefixed_stream(logger) -> None:
    fake = _FakeRedis()
    bus = _bus(fake, logger)
    envelope = _envelope()

    await bus.publish(topics.USER_CREATED, envelope)

    entries = fake.streams["frolf:user.created"]
    assert len(entries) == 1
    assert Envelope.from_fields(entries[0][1]) == envelope
    assert f"frolf:dedup:{envelope.dedup_id}" in fake.keys


@pytest.mark.anyio
async def test_publish_drops_duplicates(logger) -> None:
    fake = _FakeRedis()
    bus = _bus(fake, logger)
    envelope = _envelope()

    await bus.publish(topics.USER_CREATED, envelope)
    await bus.publish(topics.USER_CREATED, envelope)

    assert len(fake.streams["frolf:user.created"]) == 1


@pytest.mark.anyio
async def test_publish_wraps_redis_errors(logger) -> None:
    fake = _FakeRedis()
    fake.fail_with = RedisConnectionError("connection refused")
    bus = _bus(fake, logger)

    with pytest.raises(PublishError) as excinfo:
        await bus.publish(topics.USER_CREATED, _envelope())
    assert excinfo.value.recoverable


@pytest.mark.anyio
async def test_unacked_entries_are_replayed_before_new_ones(logger) -> None:
    fake = _FakeRedis()
    bus = _bus(fake, logger)
    first = _envelope()
    second = _envelope()
    await bus.publish(topics.USER_CREATED, first)
    await bus.publish(topics.USER_CREATED, second)

    crashed = bus.subscribe([topics.USER_CREATED], group="discord")
    async for delivery in crashed:
        assert delivery.envelope == first
        break
    await crashed.close()

    received: list[Envelope] = []
    restarted = bus.subscribe([topics.USER_CREATED], group="discord")
    async for delivery in restarted:
        assert delivery.topic == topics.USER_CREATED
        received.append(delivery.envelope)
        await delivery.ack()
        if len(received) == 2:
            break
    await restarted.close()

    assert received == [first, second]
    assert [entry_id for _name, entry_id in fake.acked] == ["1-0", "2-0"]
    assert fake.groups[("frolf:user.created", "discord")]["pending"] == {}


@pytest.mark.anyio
async def test_malformed_entries_are_acked_and_skipped(logger) -> None:
    fake = _FakeRedis()
    bus = _bus(fake, logger)
    await fake.xadd(
        "frolf:user.created", {"uuid": "bad", "payload": "{}", "metadata": "nope"}
    )
    good = _envelope()
    await bus.publish(topics.USER_CREATED, good)

    subscription = bus.subscribe([topics.USER_CREATED], group="discord")
    async for delivery in subscription:
        assert delivery.envelope == good
        await delivery.ack()
        break
    await subscription.close()

    assert [entry_id for _name, entry_id in fake.acked] == ["1-0", "2-0"]


@pytest.mark.anyio
async def test_close_closes_client(logger) -> None:
    fake = _FakeRedis()
    await _bus(fake, logger).close()
    assert fake.closed

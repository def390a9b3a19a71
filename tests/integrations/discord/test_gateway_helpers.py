from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import pytest

from frolf_discord.integrations.discord.errors import DiscordAPIError
from frolf_discord.integrations.discord.gateway import (
    DiscordGatewayClient,
    build_identify_payload,
    build_resume_payload,
    calculate_reconnect_backoff,
    gateway_close_code,
    parse_gateway_frame,
)


def test_parse_gateway_frame() -> None:
    frame = parse_gateway_frame(
        b'{"op": 0, "s": 3, "t": "INTERACTION_CREATE", "d": {"id": "I1"}}'
    )
    assert (frame.op, frame.s, frame.t, frame.d) == (
        0,
        3,
        "INTERACTION_CREATE",
        {"id": "I1"},
    )
    assert parse_gateway_frame({"op": 11, "s": "x"}).s is None
    with pytest.raises(DiscordAPIError):
        parse_gateway_frame("[1, 2]")
    with pytest.raises(DiscordAPIError):
        parse_gateway_frame('{"t": "READY"}')


def test_reconnect_backoff_grows_and_caps() -> None:
    mid = lambda: 0.5  # noqa: E731
    assert calculate_reconnect_backoff(0, rand_float=mid) == pytest.approx(1.0)
    assert calculate_reconnect_backoff(2, rand_float=mid) == pytest.approx(4.0)
    assert calculate_reconnect_backoff(10, rand_float=mid) == 30.0
    assert calculate_reconnect_backoff(-3, rand_float=lambda: 0.0) == pytest.approx(0.8)
    assert calculate_reconnect_backoff(1, max_seconds=0) == 0.0


def test_gateway_close_code() -> None:
    assert gateway_close_code(SimpleNamespace(code=4004)) == 4004
    assert gateway_close_code(SimpleNamespace(rcvd=SimpleNamespace(code=4014))) == 4014
    assert gateway_close_code(RuntimeError("x")) is None


def test_identify_payload() -> None:
    payload = build_identify_payload(bot_token="tok", intents=513)
    assert payload["op"] == 2
    assert payload["d"]["token"] == "tok"
    assert payload["d"]["intents"] == 513
    assert payload["d"]["properties"]["browser"] == "frolf-discord"


class _FakeWebSocket:
    def __init__(self, frames: list[dict[str, Any]]) -> None:
        self._frames = [json.dumps(frame) for frame in frames]
        self.sent: list[dict[str, Any]] = []
        self.closed = False

    async def recv(self) -> str:
        return json.dumps({"op": 10, "d": {"heartbeat_interval": 45000}})

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            if self.closed:
                return
            yield frame


class _Connection:
    def __init__(self, websocket: _FakeWebSocket) -> None:
        self._websocket = websocket

    async def __aenter__(self) -> _FakeWebSocket:
        return self._websocket

    async def __aexit__(self, *_exc_info: object) -> None:
        return None


class _Connector:
    def __init__(self, attempts: list[Any]) -> None:
        self._attempts = list(attempts)
        self.urls: list[str] = []

    def __call__(self, url: str) -> _Connection:
        self.urls.append(url)
        attempt = self._attempts.pop(0)
        if isinstance(attempt, Exception):
            raise attempt
        return _Connection(attempt)


class _Sleeper:
    """Records reconnect delays; parks the heartbeat loop until it is cancelled."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        if seconds >= 10:
            await asyncio.Event().wait()
        self.delays.append(seconds)


@pytest.mark.anyio
async def test_run_identifies_and_dispatches_in_order(logger) -> None:
    websocket = _FakeWebSocket(
        [
            {"op": 0, "s": 1, "t": "GUILD_CREATE", "d": {"id": "G1"}},
            {"op": 11},
            {"op": 0, "s": 2, "t": "READY", "d": {"user": {"id": "B1"}}},
            {"op": 0, "s": 3, "t": "INTERACTION_CREATE", "d": {"id": "I1"}},
        ]
    )
    connector = _Connector([websocket])
    client = DiscordGatewayClient(
        bot_token="tok",
        intents=1,
        logger=logger,
        gateway_url="wss://gateway.test",
        connect=connector,
        sleep_fn=_Sleeper(),
    )
    seen: list[tuple[str, dict]] = []

    async def on_dispatch(event_type: str, payload: dict) -> None:
        seen.append((event_type, payload))
        if event_type == "READY":
            await client.stop()

    await asyncio.wait_for(client.run(on_dispatch), timeout=5)

    assert connector.urls == ["wss://gateway.test"]
    assert websocket.sent[0]["op"] == 2
    assert websocket.sent[0]["d"]["token"] == "tok"
    assert [event for event, _ in seen] == ["GUILD_CREATE", "READY"]
    assert client.sequence == 2
    assert websocket.closed


@pytest.mark.anyio
async def test_run_reconnects_after_connect_failure(logger) -> None:
    websocket = _FakeWebSocket([{"op": 0, "s": 1, "t": "READY", "d": {}}])
    connector = _Connector([RuntimeError("dns failure"), websocket])
    sleeper = _Sleeper()
    client = DiscordGatewayClient(
        bot_token="tok",
        intents=1,
        logger=logger,
        gateway_url="wss://gateway.test",
        connect=connector,
        sleep_fn=sleeper,
    )

    async def on_dispatch(event_type: str, _payload: dict) -> None:
        if event_type == "READY":
            await client.stop()

    await asyncio.wait_for(client.run(on_dispatch), timeout=5)

    assert len(connector.urls) == 2
    assert len(sleeper.delays) == 1
    assert 0.8 <= sleeper.delays[0] <= 1.2


@pytest.mark.anyio
async def test_server_requested_reconnect_opens_new_connection(logger) -> None:
    first = _FakeWebSocket([{"op": 0, "s": 1, "t": "READY", "d": {}}, {"op": 7}])
    second = _FakeWebSocket([{"op": 0, "s": 5, "t": "RESUMED", "d": {}}])
    connector = _Connector([first, second])
    sleeper = _Sleeper()
    client = DiscordGatewayClient(
        bot_token="tok",
        intents=1,
        logger=logger,
        gateway_url="wss://gateway.test",
        connect=connector,
        sleep_fn=sleeper,
    )
    seen: list[str] = []

    async def on_dispatch(event_type: str, _payload: dict) -> None:
        seen.append(event_type)
        if event_type == "RESUMED":
            await client.stop()

    await asyncio.wait_for(client.run(on_dispatch), timeout=5)

    assert seen == ["READY", "RESUMED"]
    assert len(sleeper.delays) == 1
    assert client.sequence == 5


def test_resume_payload() -> None:
    assert build_resume_payload(bot_token="tok", session_id="S1", sequence=9) == {
        "op": 6,
        "d": {"token": "tok", "session_id": "S1", "seq": 9},
    }


def _resumable_client(logger, connector, sleeper) -> DiscordGatewayClient:
    return DiscordGatewayClient(
        bot_token="tok",
        intents=1,
        logger=logger,
        gateway_url="wss://gateway.test",
        connect=connector,
        sleep_fn=sleeper,
    )


READY_WITH_SESSION = {
    "op": 0,
    "s": 1,
    "t": "READY",
    "d": {"session_id": "S1", "resume_gateway_url": "wss://resume.test"},
}


@pytest.mark.anyio
async def test_reconnect_resumes_session_on_resume_url(logger) -> None:
    first = _FakeWebSocket(
        [READY_WITH_SESSION, {"op": 0, "s": 4, "t": "GUILD_CREATE", "d": {}}, {"op": 7}]
    )
    second = _FakeWebSocket([{"op": 0, "s": 5, "t": "RESUMED", "d": {}}])
    connector = _Connector([first, second])
    client = _resumable_client(logger, connector, _Sleeper())

    async def on_dispatch(event_type: str, _payload: dict) -> None:
        if event_type == "RESUMED":
            await client.stop()

    await asyncio.wait_for(client.run(on_dispatch), timeout=5)

    assert connector.urls == [
        "wss://gateway.test",
        "wss://resume.test/?v=10&encoding=json",
    ]
    assert first.sent[0]["op"] == 2
    assert second.sent[0] == {
        "op": 6,
        "d": {"token": "tok", "session_id": "S1", "seq": 4},
    }


@pytest.mark.anyio
async def test_non_resumable_invalid_session_identifies_again(logger) -> None:
    first = _FakeWebSocket([READY_WITH_SESSION, {"op": 9, "d": False}])
    second = _FakeWebSocket([{"op": 0, "s": 1, "t": "READY", "d": {"session_id": "S2"}}])
    connector = _Connector([first, second])
    client = _resumable_client(logger, connector, _Sleeper())

    async def on_dispatch(event_type: str, payload: dict) -> None:
        if payload.get("session_id") == "S2":
            await client.stop()

    await asyncio.wait_for(client.run(on_dispatch), timeout=5)

    assert connector.urls == ["wss://gateway.test", "wss://gateway.test"]
    assert second.sent[0]["op"] == 2
    assert client.session is not None
    assert client.session.session_id == "S2"

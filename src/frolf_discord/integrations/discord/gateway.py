from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import platform
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ...core.logging_utils import log_event
from .constants import DISCORD_GATEWAY_URL
from .errors import DiscordAPIError, DiscordPermanentError
from .rest import DiscordRestClient

FATAL_GATEWAY_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}
# Invalid sequence and session timeout: reconnect, but IDENTIFY afresh.
SESSION_INVALIDATING_CLOSE_CODES = {4007, 4009}

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

DispatchFn = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class GatewayFrame:
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None


def build_identify_payload(*, bot_token: str, intents: int) -> dict[str, Any]:
    return {
        "op": OP_IDENTIFY,
        "d": {
            "token": bot_token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "frolf-discord",
                "device": "frolf-discord",
            },
        },
    }


def build_resume_payload(
    *, bot_token: str, session_id: str, sequence: int
) -> dict[str, Any]:
    return {
        "op": OP_RESUME,
        "d": {"token": bot_token, "session_id": session_id, "seq": sequence},
    }


def parse_gateway_frame(frame: str | bytes | dict[str, Any]) -> GatewayFrame:
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8")
    payload = json.loads(frame) if isinstance(frame, str) else dict(frame)
    if not isinstance(payload, dict):
        raise DiscordAPIError("Discord gateway frame must be a JSON object")
    op = payload.get("op")
    if not isinstance(op, int):
        raise DiscordAPIError(f"Discord gateway frame missing numeric op: {payload!r}")
    seq = payload.get("s")
    event_type = payload.get("t")
    return GatewayFrame(
        op=op,
        d=payload.get("d"),
        s=seq if isinstance(seq, int) else None,
        t=event_type if isinstance(event_type, str) else None,
    )


def calculate_reconnect_backoff(
    attempt: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 30.0,
    rand_float: Callable[[], float] = random.random,
) -> float:
    """Exponential reconnect delay with +/-20% jitter, pinned to ``max_seconds``."""
    normalized_attempt = max(attempt, 0)
    if max_seconds <= 0.0 or base_seconds <= 0.0:
        return 0.0
    cap_threshold = math.ceil(math.log2(max_seconds / (base_seconds * 0.8)))
    if normalized_attempt >= max(cap_threshold, 0):
        return max_seconds
    scaled = base_seconds * (2**normalized_attempt)
    jitter_factor = 0.8 + (0.4 * min(max(rand_float(), 0.0), 1.0))
    return min(max_seconds, max(0.0, scaled * jitter_factor))


def gateway_close_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    received = getattr(exc, "rcvd", None)
    received_code = getattr(received, "code", None)
    if isinstance(received_code, int):
        return received_code
    return None


def _with_gateway_query(url: str) -> str:
    if "?" in url:
        return url
    return f"{url.rstrip('/')}/?v=10&encoding=json"


@dataclass
class GatewaySession:
    """What a dropped connection needs to RESUME instead of IDENTIFY again."""

    session_id: str
    resume_url: str


class DiscordGatewayClient:
    """Websocket connection to the Discord gateway.

    Dispatch events are handed to ``on_dispatch`` in arrival order; the callback
    must return quickly (it should schedule work rather than do it). After a
    READY the client resumes the session on reconnect, so interactions and
    reactions sent while the socket was down are replayed rather than lost.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        intents: int,
        logger: logging.Logger,
        gateway_url: str | None = None,
        connect: Optional[Callable[[str], Any]] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._bot_token = bot_token
        self._intents = intents
        self._logger = logger
        self._gateway_url = gateway_url
        self._connect = connect or websockets.connect
        self._sleep = sleep_fn
        self._sequence: Optional[int] = None
        self._session: Optional[GatewaySession] = None
        self._awaiting_ack = False
        self._ready_in_connection = False
        self._stop_event = asyncio.Event()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._websocket: Any = None

    @property
    def sequence(self) -> Optional[int]:
        return self._sequence

    @property
    def session(self) -> Optional[GatewaySession]:
        return self._session

    def _can_resume(self) -> bool:
        return self._session is not None and self._sequence is not None

    def _forget_session(self) -> None:
        self._session = None
        self._sequence = None

    async def stop(self) -> None:
        self._stop_event.set()
        await self._cancel_heartbeat()
        if self._websocket is not None:
            with contextlib.suppress(Exception):
                await self._websocket.close()

    async def run(self, on_dispatch: DispatchFn) -> None:
        reconnect_attempt = 0
        while not self._stop_event.is_set():
            established_session = False
            fatal_reason: Optional[str] = None
            self._ready_in_connection = False
            try:
                session = self._session if self._can_resume() else None
                if session is not None:
                    gateway_url = session.resume_url
                else:
                    gateway_url = await self._resolve_gateway_url()
                async with self._connect(gateway_url) as websocket:
                    self._websocket = websocket
                    established_session = await self._run_connection(
                        websocket, on_dispatch
                    )
            except asyncio.CancelledError:
                raise
            except DiscordPermanentError as exc:
                fatal_reason = str(exc)
            except ConnectionClosed as exc:
                close_code = gateway_close_code(exc)
                if close_code in FATAL_GATEWAY_CLOSE_CODES:
                    fatal_reason = f"gateway_close_code={close_code}"
                else:
                    if close_code in SESSION_INVALIDATING_CLOSE_CODES:
                        self._forget_session()
                    log_event(
                        self._logger,
                        logging.INFO,
                        "discord.gateway.closed",
                        close_code=close_code,
                        resumable=self._can_resume(),
                    )
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "discord.gateway.error", exc=exc
                )
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

            if self._stop_event.is_set():
                break
            if fatal_reason is not None:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "discord.gateway.halted",
                    reason=fatal_reason,
                    hint="fix the bot token or intents and restart",
                )
                await self._stop_event.wait()
                break
            if established_session or self._ready_in_connection:
                reconnect_attempt = 0
            backoff = calculate_reconnect_backoff(reconnect_attempt)
            reconnect_attempt += 1
            await self._sleep(backoff)

    async def _resolve_gateway_url(self) -> str:
        if self._gateway_url:
            return self._gateway_url
        async with DiscordRestClient(bot_token=self._bot_token) as rest:
            payload = await rest.get_gateway_bot()
        url = payload.get("url") if isinstance(payload, dict) else None
        if not isinstance(url, str) or not url:
            return DISCORD_GATEWAY_URL
        return _with_gateway_query(url)

    def _handshake_payload(self) -> dict[str, Any]:
        if self._session is not None and self._sequence is not None:
            return build_resume_payload(
                bot_token=self._bot_token,
                session_id=self._session.session_id,
                sequence=self._sequence,
            )
        return build_identify_payload(bot_token=self._bot_token, intents=self._intents)

    def _remember_session(self, ready: dict[str, Any]) -> None:
        session_id = ready.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            return
        resume_url = ready.get("resume_gateway_url")
        if isinstance(resume_url, str) and resume_url:
            resume_url = _with_gateway_query(resume_url)
        else:
            resume_url = self._gateway_url or DISCORD_GATEWAY_URL
        self._session = GatewaySession(session_id=session_id, resume_url=resume_url)

    async def _run_connection(self, websocket: Any, on_dispatch: DispatchFn) -> bool:
        hello = parse_gateway_frame(await websocket.recv())
        if hello.op != OP_HELLO:
            raise DiscordAPIError("Discord gateway expected HELLO frame before IDENTIFY")
        heartbeat_data = hello.d if isinstance(hello.d, dict) else {}
        heartbeat_ms = heartbeat_data.get("heartbeat_interval")
        if not isinstance(heartbeat_ms, (int, float)) or heartbeat_ms <= 0:
            raise DiscordAPIError("Discord gateway HELLO missing heartbeat_interval")

        self._awaiting_ack = False
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(websocket, float(heartbeat_ms) / 1000.0)
        )
        handshake = self._handshake_payload()
        await websocket.send(json.dumps(handshake))
        log_event(
            self._logger,
            logging.INFO,
            "discord.gateway.handshake",
            op="resume" if handshake["op"] == OP_RESUME else "identify",
            sequence=self._sequence,
        )
        established_session = False

        async for raw_message in websocket:
            frame = parse_gateway_frame(raw_message)
            if frame.s is not None:
                self._sequence = frame.s

            if frame.op == OP_DISPATCH:
                if frame.t in ("READY", "RESUMED"):
                    established_session = True
                    self._ready_in_connection = True
                if frame.t == "READY" and isinstance(frame.d, dict):
                    self._remember_session(frame.d)
                if frame.t and isinstance(frame.d, dict):
                    await on_dispatch(frame.t, frame.d)
            elif frame.op == OP_HEARTBEAT:
                await websocket.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))
            elif frame.op == OP_HEARTBEAT_ACK:
                self._awaiting_ack = False
            elif frame.op == OP_RECONNECT:
                log_event(self._logger, logging.INFO, "discord.gateway.reconnect_requested")
                return established_session
            elif frame.op == OP_INVALID_SESSION:
                # ``d`` tells whether the session may still be resumed.
                if frame.d is not True:
                    self._forget_session()
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.gateway.invalid_session",
                    resumable=self._can_resume(),
                )
                return established_session

        return established_session

    async def _heartbeat_loop(self, websocket: Any, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            await self._sleep(interval_seconds)
            if self._awaiting_ack:
                # No ACK for the previous beat: the connection is a zombie.
                log_event(self._logger, logging.WARNING, "discord.gateway.heartbeat_missed")
                await websocket.close(code=4000)
                return
            self._awaiting_ack = True
            await websocket.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))

    async def _cancel_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        task = self._heartbeat_task
        self._heartbeat_task = None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log_event(
                self._logger, logging.DEBUG, "discord.gateway.heartbeat_ended", exc=exc
            )

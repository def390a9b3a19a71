from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from ..core.config import BusSettings
from ..core.logging_utils import log_event
from .base import Delivery, PublishError
from .envelope import Envelope, EnvelopeError, validate_envelope

DEFAULT_BLOCK_MS = 5000
DEFAULT_MAX_STREAM_LENGTH = 100_000


class RedisStreamSubscription:
    """Consumer-group reader with at most one unacknowledged entry at a time."""

    def __init__(
        self,
        bus: "RedisStreamBus",
        topics: Sequence[str],
        *,
        group: str,
        consumer: str,
        block_ms: int = DEFAULT_BLOCK_MS,
    ) -> None:
        self._bus = bus
        self._topics = tuple(topics)
        self._group = group
        self._consumer = consumer
        self._block_ms = block_ms
        self._closed = False
        self._groups_ready = False

    async def __aenter__(self) -> "RedisStreamSubscription":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    async def _ensure_groups(self) -> None:
        if self._groups_ready:
            return
        for topic in self._topics:
            try:
                await self._bus.redis.xgroup_create(
                    self._bus.stream_name(topic), self._group, id="0", mkstream=True
                )
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    raise
        self._groups_ready = True

    def __aiter__(self) -> AsyncIterator[Delivery]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Delivery]:
        await self._ensure_groups()
        streams = {self._bus.stream_name(topic): ">" for topic in self._topics}
        # Entries left pending by a previous run are replayed first.
        pending_streams = {name: "0" for name in streams}
        while not self._closed:
            source = pending_streams or streams
            response = await self._bus.redis.xreadgroup(
                self._group,
                self._consumer,
                source,
                count=1,
                block=None if pending_streams else self._block_ms,
            )
            if not response:
                continue
            delivered = False
            for stream_name, entries in response:
                stream = (
                    stream_name.decode()
                    if isinstance(stream_name, bytes)
                    else str(stream_name)
                )
                if not entries:
                    pending_streams.pop(stream, None)
                    continue
                for entry_id, fields in entries:
                    delivered = True
                    if stream in pending_streams:
                        pending_streams[stream] = (
                            entry_id.decode()
                            if isinstance(entry_id, bytes)
                            else str(entry_id)
                        )
                    delivery = self._to_delivery(stream, entry_id, fields)
                    if delivery is None:
                        await self._bus.redis.xack(stream, self._group, entry_id)
                        continue
                    yield delivery
            if pending_streams and not delivered:
                pending_streams.clear()

    def _to_delivery(
        self, stream: str, entry_id: Any, fields: dict[Any, Any]
    ) -> Optional[Delivery]:
        topic = self._bus.topic_for(stream)
        try:
            envelope = Envelope.from_fields(fields)
        except EnvelopeError as exc:
            log_event(
                self._bus.logger,
                logging.WARNING,
                "bus.redis.malformed_entry",
                stream=stream,
                entry_id=str(entry_id),
                exc=exc,
            )
            return None

        async def ack() -> None:
            await self._bus.redis.xack(stream, self._group, entry_id)

        async def nack() -> None:
            # Left pending; replayed from the PEL on the next start.
            log_event(
                self._bus.logger,
                logging.INFO,
                "bus.redis.nack",
                stream=stream,
                entry_id=str(entry_id),
            )

        return Delivery(topic=topic, envelope=envelope, ack=ack, nack=nack)

    async def close(self) -> None:
        self._closed = True


class RedisStreamBus:
    """Event bus over Redis Streams: one stream per topic, consumer groups for fan-out."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        *,
        logger: logging.Logger,
        stream_prefix: str = "",
        consumer_name: str = "consumer-1",
        dedup_window_seconds: int = 120,
        max_stream_length: int = DEFAULT_MAX_STREAM_LENGTH,
    ) -> None:
        self.redis = redis_client
        self.logger = logger
        self._prefix = stream_prefix
        self._consumer_name = consumer_name
        self._dedup_window = max(int(dedup_window_seconds), 1)
        self._max_stream_length = max_stream_length

    @classmethod
    def from_settings(
        cls, settings: BusSettings, *, logger: logging.Logger
    ) -> "RedisStreamBus":
        pool = aioredis.ConnectionPool.from_url(
            settings.url,
            health_check_interval=30,
            socket_keepalive=True,
            socket_connect_timeout=2,
            decode_responses=True,
        )
        return cls(
            aioredis.Redis(connection_pool=pool),
            logger=logger,
            stream_prefix=settings.stream_prefix,
            consumer_name=settings.consumer_name,
            dedup_window_seconds=settings.dedup_window_seconds,
        )

    def stream_name(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    def topic_for(self, stream: str) -> str:
        if self._prefix and stream.startswith(self._prefix):
            return stream[len(self._prefix) :]
        return stream

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def publish(self, topic: str, envelope: Envelope) -> None:
        validate_envelope(envelope)
        try:
            fresh = await self.redis.set(
                f"{self._prefix}dedup:{envelope.dedup_id}",
                "1",
                nx=True,
                ex=self._dedup_window,
            )
            if not fresh:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "bus.publish.duplicate",
                    topic=topic,
                    dedup_id=envelope.dedup_id,
                )
                return
            await self.redis.xadd(
                self.stream_name(topic),
                envelope.to_fields(),
                maxlen=self._max_stream_length,
                approximate=True,
            )
        except RedisError as exc:
            log_event(
                self.logger,
                logging.ERROR,
                "bus.publish.failed",
                topic=topic,
                correlation_id=envelope.correlation_id,
                exc=exc,
            )
            raise PublishError(f"failed to publish to {topic}: {exc}") from exc

    def subscribe(
        self, topics: Sequence[str], *, group: str
    ) -> RedisStreamSubscription:
        return RedisStreamSubscription(
            self, topics, group=group, consumer=self._consumer_name
        )

    async def close(self) -> None:
        await self.redis.aclose()

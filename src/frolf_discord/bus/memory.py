from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Optional, Sequence

from .base import Delivery, PublishError
from .envelope import Envelope, validate_envelope

logger = logging.getLogger(__name__)


class InMemorySubscription:
    def __init__(
        self,
        bus: "InMemoryBus",
        queue: "asyncio.Queue[tuple[str, Envelope]]",
        topics: Sequence[str],
        group: str,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self._topics = tuple(topics)
        self._group = group
        self._closed = False

    async def __aenter__(self) -> "InMemorySubscription":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[Delivery]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Delivery]:
        while not self._closed:
            topic, envelope = await self._queue.get()
            if self._closed:
                break

            async def ack(envelope_id: str = envelope.uuid) -> None:
                self._bus.acked.append(envelope_id)

            async def nack(item: tuple[str, Envelope] = (topic, envelope)) -> None:
                self._bus.redeliveries += 1
                self._queue.put_nowait(item)

            yield Delivery(topic=topic, envelope=envelope, ack=ack, nack=nack)

    async def close(self) -> None:
        self._closed = True
        self._bus._unregister(self._group, self._topics, self._queue)


class InMemoryBus:
    """Process-local bus with the same dedup semantics as the broker-backed one."""

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._queues: dict[tuple[str, str], "asyncio.Queue[tuple[str, Envelope]]"] = {}
        self._topic_groups: dict[str, set[str]] = defaultdict(set)
        self._seen_dedup_ids: set[str] = set()
        self._max_queue_size = max_queue_size
        self._closed = False
        self.published: list[tuple[str, Envelope]] = []
        self.redeliveries = 0
        self.acked: list[str] = []
        self.fail_next_publish: Optional[BaseException] = None

    async def publish(self, topic: str, envelope: Envelope) -> None:
        if self._closed:
            raise PublishError("bus is closed")
        if self.fail_next_publish is not None:
            exc, self.fail_next_publish = self.fail_next_publish, None
            raise exc
        validate_envelope(envelope)
        if envelope.dedup_id in self._seen_dedup_ids:
            logger.debug("Dropping duplicate message %s on %s", envelope.dedup_id, topic)
            return
        self._seen_dedup_ids.add(envelope.dedup_id)
        self.published.append((topic, envelope))
        for group in self._topic_groups.get(topic, ()):
            queue = self._queues.get((group, topic))
            if queue is None:
                continue
            try:
                queue.put_nowait((topic, envelope))
            except asyncio.QueueFull as exc:
                raise PublishError(f"subscriber queue full for {topic}") from exc

    def subscribe(self, topics: Sequence[str], *, group: str) -> InMemorySubscription:
        queue: "asyncio.Queue[tuple[str, Envelope]]" = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        for topic in topics:
            self._queues[(group, topic)] = queue
            self._topic_groups[topic].add(group)
        return InMemorySubscription(self, queue, topics, group)

    def _unregister(
        self,
        group: str,
        topics: Sequence[str],
        queue: "asyncio.Queue[tuple[str, Envelope]]",
    ) -> None:
        for topic in topics:
            if self._queues.get((group, topic)) is queue:
                del self._queues[(group, topic)]
                self._topic_groups[topic].discard(group)

    def published_on(self, topic: str) -> list[Envelope]:
        return [envelope for name, envelope in self.published if name == topic]

    async def close(self) -> None:
        self._closed = True

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Protocol, Sequence

from ..core.exceptions import FrolfBotError, TransientError
from .envelope import Envelope


class BusError(FrolfBotError):
    """Base message bus error."""


class PublishError(BusError, TransientError):
    """The bus could not accept a message."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, user_message="⚠️ Something went wrong. Please try again."
        )


@dataclass
class Delivery:
    topic: str
    envelope: Envelope
    ack: Callable[[], Awaitable[None]]
    nack: Callable[[], Awaitable[None]]


class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[Delivery]: ...

    async def close(self) -> None: ...


class EventBus(Protocol):
    async def publish(self, topic: str, envelope: Envelope) -> None: ...

    def subscribe(self, topics: Sequence[str], *, group: str) -> Subscription: ...

    async def close(self) -> None: ...

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..integrations.discord.interactions import InteractionHandle
from .config import (
    DEFAULT_CORRELATION_TTL_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    MAX_CORRELATION_TTL_SECONDS,
)
from .exceptions import FrolfBotError
from .logging_utils import log_event


class StoreClosedError(FrolfBotError):
    """Raised when writing to a store after shutdown."""


@dataclass(frozen=True)
class CorrelationEntry:
    handle: InteractionHandle
    created_at: float
    ttl_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


class CorrelationStore:
    """TTL-bounded map of correlation ID to a parked interaction handle."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        default_ttl_seconds: float = DEFAULT_CORRELATION_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        now_fn: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._default_ttl = min(default_ttl_seconds, MAX_CORRELATION_TTL_SECONDS)
        self._sweep_interval = max(sweep_interval_seconds, 0.1)
        self._now = now_fn
        self._sleep = sleep_fn
        self._entries: dict[str, CorrelationEntry] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def set(
        self,
        correlation_id: str,
        handle: InteractionHandle,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        ttl = min(max(ttl, 0.0), MAX_CORRELATION_TTL_SECONDS)
        async with self._lock:
            if self._closed:
                raise StoreClosedError("correlation store is closed")
            if correlation_id in self._entries:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "correlation.store.overwrite",
                    correlation_id=correlation_id,
                    interaction_id=handle.interaction_id,
                )
            self._entries[correlation_id] = CorrelationEntry(
                handle=handle, created_at=self._now(), ttl_seconds=ttl
            )

    async def get(self, correlation_id: str) -> Optional[InteractionHandle]:
        async with self._lock:
            entry = self._entries.get(correlation_id)
            if entry is None:
                return None
            if entry.expired(self._now()):
                del self._entries[correlation_id]
                return None
            return entry.handle

    async def delete(self, correlation_id: str) -> None:
        async with self._lock:
            self._entries.pop(correlation_id, None)

    async def sweep(self) -> int:
        now = self._now()
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            log_event(
                self._logger,
                logging.DEBUG,
                "correlation.store.swept",
                evicted=len(expired),
            )
        return len(expired)

    async def run_sweeper(self) -> None:
        while not self._closed:
            await self._sleep(self._sweep_interval)
            await self.sweep()

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

from .config import DEFAULT_PENDING_UPLOAD_TTL_SECONDS, DEFAULT_SWEEP_INTERVAL_SECONDS
from .logging_utils import log_event


@dataclass(frozen=True)
class PendingUpload:
    round_id: str
    guild_id: str
    notes: str = ""
    source_message_id: str = ""
    event_message_id: str = ""
    created_at: float = 0.0
    ttl_seconds: float = DEFAULT_PENDING_UPLOAD_TTL_SECONDS


@dataclass
class PendingUploadMap:
    """Expectations that a user will post a scorecard file in a given channel.

    Keyed by ``(user_id, channel_id)``; an entry is handed out at most once.
    """

    logger: logging.Logger
    default_ttl_seconds: float = DEFAULT_PENDING_UPLOAD_TTL_SECONDS
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    now_fn: Callable[[], float] = time.monotonic
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep
    _entries: dict[tuple[str, str], PendingUpload] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _closed: bool = False

    def _expired(self, record: PendingUpload, now: float) -> bool:
        return now - record.created_at > record.ttl_seconds

    async def remember(
        self,
        user_id: str,
        channel_id: str,
        record: PendingUpload,
        ttl_seconds: Optional[float] = None,
    ) -> PendingUpload:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        stored = replace(record, created_at=self.now_fn(), ttl_seconds=ttl)
        async with self._lock:
            self._entries[(user_id, channel_id)] = stored
        return stored

    async def consume(self, user_id: str, channel_id: str) -> Optional[PendingUpload]:
        async with self._lock:
            record = self._entries.pop((user_id, channel_id), None)
        if record is None:
            return None
        if self._expired(record, self.now_fn()):
            log_event(
                self.logger,
                logging.INFO,
                "pending_upload.expired",
                user_id=user_id,
                channel_id=channel_id,
                round_id=record.round_id,
            )
            return None
        return record

    async def restore(self, user_id: str, channel_id: str, record: PendingUpload) -> None:
        """Put back a consumed entry (keeping its original age) so the user can retry."""
        async with self._lock:
            self._entries.setdefault((user_id, channel_id), record)

    async def sweep(self) -> int:
        now = self.now_fn()
        async with self._lock:
            stale = [key for key, rec in self._entries.items() if self._expired(rec, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    async def run_sweeper(self) -> None:
        while not self._closed:
            await self.sleep_fn(max(self.sweep_interval_seconds, 0.1))
            await self.sweep()

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

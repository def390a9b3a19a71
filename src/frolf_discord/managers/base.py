from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

from ..bus.base import EventBus, PublishError
from ..bus.envelope import Envelope, Payload, build_envelope
from ..core.config import BotConfig
from ..core.correlation_store import CorrelationStore
from ..core.guild_config import GuildConfig, GuildConfigResolver
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.constants import (
    DISCORD_EPHEMERAL_FLAG,
    RESPONSE_CHANNEL_MESSAGE,
    RESPONSE_DEFERRED_CHANNEL_MESSAGE,
    RESPONSE_DEFERRED_UPDATE_MESSAGE,
    RESPONSE_MODAL,
    RESPONSE_UPDATE_MESSAGE,
)
from ..integrations.discord.interactions import InteractionHandle
from ..integrations.discord.registry import InteractionRegistry
from ..integrations.discord.rendering import truncate_for_discord
from ..integrations.discord.session import DiscordSession

PUBLISH_FAILED_MESSAGE = "⚠️ Something went wrong. Please try again."
# Background work is not racing Discord's 3 second ack window.
BACKGROUND_CONFIG_TIMEOUT_SECONDS = 10.0


@dataclass
class ManagerDeps:
    """Process-wide collaborators every manager shares."""

    session: DiscordSession
    bus: EventBus
    store: CorrelationStore
    resolver: GuildConfigResolver
    config: BotConfig
    logger: logging.Logger


def _message_data(
    content: str,
    *,
    ephemeral: bool,
    components: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    data: dict[str, Any] = {"content": truncate_for_discord(content)}
    if ephemeral:
        data["flags"] = DISCORD_EPHEMERAL_FLAG
    if components is not None:
        data["components"] = components
    return data


class BaseManager:
    name = "base"

    def __init__(self, deps: ManagerDeps) -> None:
        self.deps = deps
        self._session = deps.session
        self._bus = deps.bus
        self._store = deps.store
        self._resolver = deps.resolver
        self._config = deps.config
        self._logger = deps.logger
        self._background: set[asyncio.Task[Any]] = set()

    def register(self, registry: InteractionRegistry) -> None:
        raise NotImplementedError

    # Discord responses

    async def respond(
        self,
        handle: InteractionHandle,
        content: str,
        *,
        ephemeral: bool = True,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        await self._session.interaction_respond(
            interaction_id=handle.interaction_id,
            token=handle.token,
            response={
                "type": RESPONSE_CHANNEL_MESSAGE,
                "data": _message_data(
                    content, ephemeral=ephemeral, components=components
                ),
            },
        )

    async def update_message(
        self,
        handle: InteractionHandle,
        content: str,
        *,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        await self._session.interaction_respond(
            interaction_id=handle.interaction_id,
            token=handle.token,
            response={
                "type": RESPONSE_UPDATE_MESSAGE,
                "data": {
                    "content": truncate_for_discord(content),
                    "components": components or [],
                },
            },
        )

    async def defer(self, handle: InteractionHandle, *, ephemeral: bool = True) -> None:
        await self._session.interaction_respond(
            interaction_id=handle.interaction_id,
            token=handle.token,
            response={
                "type": RESPONSE_DEFERRED_CHANNEL_MESSAGE,
                "data": {"flags": DISCORD_EPHEMERAL_FLAG} if ephemeral else {},
            },
        )

    async def defer_update(self, handle: InteractionHandle) -> None:
        await self._session.interaction_respond(
            interaction_id=handle.interaction_id,
            token=handle.token,
            response={"type": RESPONSE_DEFERRED_UPDATE_MESSAGE},
        )

    async def open_modal(self, handle: InteractionHandle, modal: dict[str, Any]) -> None:
        await self._session.interaction_respond(
            interaction_id=handle.interaction_id,
            token=handle.token,
            response={"type": RESPONSE_MODAL, "data": modal},
        )

    async def edit_original(
        self,
        handle: InteractionHandle,
        content: str,
        *,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        payload: dict[str, Any] = {"content": truncate_for_discord(content)}
        if components is not None:
            payload["components"] = components
        await self._session.edit_original_response(token=handle.token, payload=payload)

    # Guild context

    def guild_id_for(self, handle: InteractionHandle, explicit: str = "") -> str:
        """Explicit ID, then the interaction's guild, then the single-tenant default."""
        return explicit or handle.guild_id or (self._config.discord.guild_id or "")

    async def guild_config(
        self, guild_id: str, *, timeout_seconds: Optional[float] = None
    ) -> GuildConfig:
        if timeout_seconds is None:
            timeout_seconds = self._config.timings.guild_config_lookup_timeout_seconds
        return await self._resolver.get(guild_id, timeout_seconds=timeout_seconds)

    def cached_guild_config(self, guild_id: str) -> Optional[GuildConfig]:
        """Cached config for ``guild_id``, stale or not, without starting a fetch.

        Reply renderers run on the loop that delivers config replies, so they
        must not wait on ``guild_config``.
        """
        return self._resolver.cached(guild_id)

    # Background work

    def spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    # Bus

    async def publish(
        self,
        topic: str,
        payload: Payload,
        *,
        handle: Optional[InteractionHandle] = None,
        guild_id: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        require_user: bool = True,
        extra_metadata: Optional[dict[str, str]] = None,
    ) -> Envelope:
        envelope = build_envelope(
            payload,
            topic,
            handle=handle,
            guild_id=guild_id,
            user_id=user_id,
            correlation_id=correlation_id,
            require_user=require_user,
            extra_metadata=extra_metadata,
        )
        await self._bus.publish(topic, envelope)
        log_event(
            self._logger,
            logging.INFO,
            "bus.publish.ok",
            manager=self.name,
            topic=topic,
            correlation_id=envelope.correlation_id,
            guild_id=envelope.metadata.get("guild_id"),
        )
        return envelope

    async def park_and_publish(
        self,
        topic: str,
        payload: Payload,
        handle: InteractionHandle,
        *,
        guild_id: Optional[str] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Park ``handle`` under a correlation ID (fresh unless given), then publish.

        The entry is removed again if the publish fails, so nothing is orphaned.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        await self._store.set(
            correlation_id,
            handle,
            self._config.timings.correlation_ttl_seconds,
        )
        try:
            await self.publish(
                topic,
                payload,
                handle=handle,
                guild_id=guild_id,
                user_id=user_id,
                correlation_id=correlation_id,
            )
        except BaseException:
            await self._store.delete(correlation_id)
            raise
        return correlation_id

    async def publish_failed(
        self,
        handle: InteractionHandle,
        exc: PublishError,
        *,
        acknowledged: bool,
    ) -> HandlerResult:
        text = exc.user_message or PUBLISH_FAILED_MESSAGE
        if acknowledged:
            await self.edit_original(handle, text)
        else:
            await self.respond(handle, text)
        return HandlerResult.failed(str(exc))

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import GuildSetupRequestPayload
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.errors import DiscordAPIError
from ..integrations.discord.interactions import InteractionKind
from ..integrations.discord.registry import (
    SETUP_COMMAND_NAME,
    InteractionContext,
    InteractionRegistry,
)
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager, ManagerDeps

SETUP_GUILD_ONLY = "❌ Setup can only be run inside a server."
SETUP_COMPLETE = (
    "✅ **Setup Complete!**\n"
    "All server commands have been registered and are ready to use."
)

SetupCompletedHook = Callable[[str], Awaitable[None]]


class SetupManager(BaseManager):
    """``/frolf-setup``: asks the backend to provision the guild.

    Channel and role provisioning happen elsewhere; the bot only relays the
    request and, once the backend reports success, refreshes the guild's
    config and slash commands.
    """

    name = "setup"

    def __init__(
        self,
        deps: ManagerDeps,
        *,
        on_setup_completed: Optional[SetupCompletedHook] = None,
    ) -> None:
        super().__init__(deps)
        self.on_setup_completed = on_setup_completed

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            SETUP_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.GUILD_SETUP_COMPLETED, self.render_completed)
        router.register(topics.GUILD_SETUP_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        guild_id = ctx.guild_id
        if not guild_id:
            await self.respond(ctx.handle, SETUP_GUILD_ONLY)
            return HandlerResult.failed("setup outside a guild")

        await self.defer(ctx.handle)
        guild_name = ""
        try:
            guild = await self._session.get_guild(guild_id=guild_id)
            guild_name = str(guild.get("name") or "")
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "setup.guild_lookup.failed",
                guild_id=guild_id,
                exc=exc,
            )

        payload = GuildSetupRequestPayload(
            guild_id=guild_id, guild_name=guild_name, requested_by=ctx.user_id
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.GUILD_SETUP_REQUESTED, payload, ctx.handle, guild_id=guild_id
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def render_completed(self, reply: ReplyContext) -> str:
        guild_id = reply.guild_id
        if guild_id:
            self._resolver.invalidate(guild_id)
            if self.on_setup_completed is not None:
                await self.on_setup_completed(guild_id)
        return SETUP_COMPLETE

    async def render_failed(self, reply: ReplyContext) -> str:
        return (
            "❌ **Setup Failed**\n\n"
            f"**Reason:** {reply.payload.failure_reason or 'unknown error'}\n\n"
            "Please try running `/frolf-setup` again."
        )

from __future__ import annotations

import logging

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import UDiscIdentityUpdatePayload
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.interactions import InteractionKind, extract_command_options
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager

UDISC_COMMAND_NAME = "set-udisc-name"

UDISC_MISSING_FIELDS = "Please provide at least a UDisc username or name."
UDISC_PUBLISH_FAILED = "Failed to update UDisc name. Please try again later."
UDISC_NO_GUILD = "Please run this command in your club's server."


def format_udisc_confirmation(username: str, name: str) -> str:
    lines = ["✅ UDisc identity updated:"]
    if username:
        lines.append(f"Username: **{username}**")
    if name:
        lines.append(f"Name: **{name}**")
    lines.append("")
    lines.append(
        "These will be used to match your scores when importing UDisc scorecards."
    )
    return "\n".join(lines)


class UDiscManager(BaseManager):
    name = "udisc"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            UDISC_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
            requires_setup=True,
            dm_bypass=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.USER_UDISC_IDENTITY_UPDATED, self.render_updated)
        router.register(topics.USER_UDISC_IDENTITY_UPDATE_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        options = extract_command_options(ctx.payload)
        username = str(options.get("username") or "").strip()
        display_name = str(options.get("name") or "").strip()
        if not username and not display_name:
            await self.respond(ctx.handle, UDISC_MISSING_FIELDS)
            return HandlerResult.failed("both fields are empty")

        guild_id = self.guild_id_for(ctx.handle)
        if not guild_id:
            await self.respond(ctx.handle, UDISC_NO_GUILD)
            return HandlerResult.failed("no guild for udisc identity")

        await self.defer(ctx.handle)
        payload = UDiscIdentityUpdatePayload(
            guild_id=guild_id,
            user_id=ctx.user_id,
            username=username or None,
            name=display_name or None,
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.USER_UDISC_IDENTITY_UPDATE_REQUEST,
                payload,
                ctx.handle,
                guild_id=guild_id,
            )
        except PublishError as exc:
            await self.edit_original(ctx.handle, UDISC_PUBLISH_FAILED)
            return HandlerResult.failed(str(exc))
        log_event(
            self._logger,
            logging.INFO,
            "udisc.identity.requested",
            guild_id=guild_id,
            user_id=ctx.user_id,
            correlation_id=correlation_id,
        )
        return HandlerResult(success=correlation_id)

    async def render_updated(self, reply: ReplyContext) -> str:
        return format_udisc_confirmation(
            str(reply.raw.get("username") or ""), str(reply.raw.get("name") or "")
        )

    async def render_failed(self, reply: ReplyContext) -> str:
        return f"❌ UDisc identity update failed: {reply.payload.failure_reason or 'unknown error'}"

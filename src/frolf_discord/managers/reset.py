from __future__ import annotations

import logging
import uuid
from typing import Any

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import GuildConfigDeletionPayload
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.command_registry import unregister_guild_commands
from ..integrations.discord.commands import SETUP_COMMAND_NAME
from ..integrations.discord.components import (
    DISCORD_BUTTON_STYLE_DANGER,
    DISCORD_BUTTON_STYLE_SECONDARY,
    build_action_row,
    build_button,
)
from ..integrations.discord.constants import DISCORD_EPHEMERAL_FLAG
from ..integrations.discord.errors import DiscordAPIError
from ..integrations.discord.interactions import InteractionKind, parse_custom_id
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager

RESET_COMMAND_NAME = "frolf-reset"
RESET_CONFIRM_PREFIX = "frolf_reset_confirm"
RESET_CANCEL_PREFIX = "frolf_reset_cancel"

RESET_CONFIRMATION = (
    "## ⚠️ Reset Server Configuration\n\n"
    "**This will:**\n"
    "• Deactivate your server's Frolf Bot configuration\n"
    "• Unregister all bot commands from your server\n"
    "• Require running `/frolf-setup` again to use the bot\n\n"
    "**This will NOT delete:**\n"
    "• Historical round data\n"
    "• User profiles and scores\n"
    "• Leaderboard history\n\n"
    "*You can re-setup the bot at any time by running `/frolf-setup` again.*\n\n"
    "**Are you sure you want to reset?**"
)
RESET_GUILD_ONLY = "❌ This command can only be used in a server."
RESET_CANCELLED = "Reset cancelled. No changes were made."
RESET_REQUEST_FAILED = (
    "❌ Failed to send reset request. Please try again or contact support."
)
RESET_COMPLETED = (
    "✅ Server configuration reset completed.\n\n"
    "Bot commands have been unregistered. Run `/frolf-setup` when you're ready."
)


def build_reset_buttons(correlation_id: str) -> list[dict[str, Any]]:
    return [
        build_action_row(
            [
                build_button(
                    "⚠️ Yes, Reset Server Data",
                    f"{RESET_CONFIRM_PREFIX}|cid={correlation_id}",
                    style=DISCORD_BUTTON_STYLE_DANGER,
                ),
                build_button(
                    "Cancel",
                    f"{RESET_CANCEL_PREFIX}|cid={correlation_id}",
                    style=DISCORD_BUTTON_STYLE_SECONDARY,
                ),
            ]
        )
    ]


def format_deletion_summary(results: Any) -> str:
    """Completion text plus one line per backend deletion result, if any were reported."""
    if not isinstance(results, dict) or not results:
        return RESET_COMPLETED
    lines = [RESET_COMPLETED, "", "Deletion results:"]
    for name in sorted(results):
        result = results[name]
        if isinstance(result, dict) and result.get("status") != "success":
            lines.append(f"- {name}: ❌ {result.get('error') or 'failed'}")
        else:
            lines.append(f"- {name}: ✅")
    return "\n".join(lines)


class ResetManager(BaseManager):
    """Two-step ``/frolf-reset``: confirmation buttons, then a deletion request.

    The command is gated by Discord's default member permissions rather than by
    the bot, so it stays usable while the guild's config is broken.
    """

    name = "reset"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            RESET_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
        )
        # Prefix registrations also match the bare legacy ids from older messages.
        registry.register(
            RESET_CONFIRM_PREFIX,
            self.handle_confirm,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
        )
        registry.register(
            RESET_CANCEL_PREFIX,
            self.handle_cancel,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.GUILD_CONFIG_DELETED, self.render_deleted)
        router.register(topics.GUILD_CONFIG_DELETION_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        if not ctx.guild_id:
            await self.respond(ctx.handle, RESET_GUILD_ONLY)
            return HandlerResult.failed("reset outside a guild")
        await self.respond(
            ctx.handle,
            RESET_CONFIRMATION,
            components=build_reset_buttons(str(uuid.uuid4())),
        )
        return HandlerResult(success="confirmation sent")

    async def handle_confirm(self, ctx: InteractionContext) -> HandlerResult:
        guild_id = ctx.guild_id
        if not guild_id:
            await self.respond(ctx.handle, RESET_GUILD_ONLY)
            return HandlerResult.failed("reset outside a guild")
        _prefix, _positional, pairs = parse_custom_id(ctx.key)

        await self.defer(ctx.handle)
        payload = GuildConfigDeletionPayload(guild_id=guild_id, requested_by=ctx.user_id)
        try:
            correlation_id = await self.park_and_publish(
                topics.GUILD_CONFIG_DELETION_REQUESTED,
                payload,
                ctx.handle,
                guild_id=guild_id,
                correlation_id=pairs.get("cid") or None,
            )
        except PublishError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "reset.publish.failed",
                guild_id=guild_id,
                exc=exc,
            )
            try:
                await self._session.create_followup(
                    token=ctx.handle.token,
                    payload={
                        "content": RESET_REQUEST_FAILED,
                        "flags": DISCORD_EPHEMERAL_FLAG,
                    },
                )
            except DiscordAPIError as followup_exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "reset.followup.failed",
                    guild_id=guild_id,
                    exc=followup_exc,
                )
            return HandlerResult.failed(str(exc))
        log_event(
            self._logger,
            logging.INFO,
            "reset.requested",
            guild_id=guild_id,
            user_id=ctx.user_id,
            correlation_id=correlation_id,
        )
        return HandlerResult(success=correlation_id)

    async def handle_cancel(self, ctx: InteractionContext) -> HandlerResult:
        await self.update_message(ctx.handle, RESET_CANCELLED)
        return HandlerResult(success="cancelled")

    async def render_deleted(self, reply: ReplyContext) -> str:
        if reply.guild_id:
            await unregister_guild_commands(
                self._session,
                guild_id=reply.guild_id,
                keep=frozenset({SETUP_COMMAND_NAME}),
                logger=self._logger,
            )
        return format_deletion_summary(reply.raw.get("results"))

    async def render_failed(self, reply: ReplyContext) -> str:
        reason = reply.payload.failure_reason or "unknown error"
        log_event(
            self._logger,
            logging.WARNING,
            "reset.failed",
            guild_id=reply.guild_id,
            reason=reason,
        )
        return (
            "❌ Failed to reset server configuration.\n\n"
            f"**Reason:** {reason}\n\nPlease try again."
        )

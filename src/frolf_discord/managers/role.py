from __future__ import annotations

import contextlib
import logging

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import RoleUpdateRequestPayload
from ..core.guild_config import GuildConfig, GuildConfigError
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.components import (
    DISCORD_BUTTON_STYLE_DANGER,
    DISCORD_BUTTON_STYLE_PRIMARY,
    build_action_row,
    build_button,
)
from ..integrations.discord.errors import DiscordAPIError
from ..integrations.discord.interactions import (
    InteractionKind,
    extract_command_options,
    parse_custom_id,
)
from ..integrations.discord.permissions import PermissionLevel
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.rendering import mention_user
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BACKGROUND_CONFIG_TIMEOUT_SECONDS, BaseManager

ROLE_BUTTON_PREFIX = "role_button"
ROLE_CANCEL_PREFIX = "role_cancel"

ROLE_UPDATE_COMPLETED = "Role update completed"


def role_button_id(role: str, target_user_id: str) -> str:
    return f"{ROLE_BUTTON_PREFIX}|{role}|{target_user_id}"


def build_role_buttons(config: GuildConfig, target_user_id: str) -> list[dict]:
    buttons = [
        build_button(
            role.capitalize(),
            role_button_id(role, target_user_id),
            style=DISCORD_BUTTON_STYLE_PRIMARY,
        )
        for role in config.role_ids()
    ]
    buttons.append(
        build_button(
            "Cancel",
            f"{ROLE_CANCEL_PREFIX}|{target_user_id}",
            style=DISCORD_BUTTON_STYLE_DANGER,
        )
    )
    return [build_action_row(buttons)]


class RoleManager(BaseManager):
    name = "role"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            "updaterole",
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
            permission=PermissionLevel.EDITOR,
            requires_setup=True,
        )
        registry.register(
            ROLE_BUTTON_PREFIX,
            self.handle_button,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
            permission=PermissionLevel.EDITOR,
            requires_setup=True,
        )
        registry.register(
            ROLE_CANCEL_PREFIX,
            self.handle_cancel,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.USER_ROLE_UPDATED, self.render_updated)
        router.register(topics.USER_ROLE_UPDATE_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        target = str(extract_command_options(ctx.payload).get("user") or "").strip()
        if not target:
            await self.respond(ctx.handle, "Please pick a member, e.g. `/updaterole @player`.")
            return HandlerResult.failed("missing target user")
        config = ctx.guild_config or await self.guild_config(ctx.guild_id)
        await self.respond(
            ctx.handle,
            f"Please choose a role for {mention_user(target)}:",
            components=build_role_buttons(config, target),
        )
        return HandlerResult(success="role picker sent")

    async def handle_button(self, ctx: InteractionContext) -> HandlerResult:
        _prefix, positional, _pairs = parse_custom_id(ctx.key)
        if len(positional) < 2:
            await self.respond(ctx.handle, "That role button is no longer valid.")
            return HandlerResult.failed(f"malformed role button: {ctx.key}")
        role, target = positional[0], positional[1]
        config = ctx.guild_config or await self.guild_config(ctx.guild_id)
        role_id = config.role_ids().get(role, "")
        if not role_id:
            await self.update_message(
                ctx.handle, f"Role '{role}' is not configured for this server."
            )
            return HandlerResult.failed(f"unknown role {role}")

        await self.update_message(
            ctx.handle,
            f"{mention_user(ctx.user_id)} has requested role '{role}' for "
            f"{mention_user(target)}. Request is being processed.",
        )
        payload = RoleUpdateRequestPayload(
            guild_id=ctx.guild_id,
            requester_id=ctx.user_id,
            target_user_id=target,
            role=role,
            role_id=role_id,
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.ROLE_UPDATE_REQUEST, payload, ctx.handle
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def handle_cancel(self, ctx: InteractionContext) -> HandlerResult:
        await self.update_message(ctx.handle, "Role request cancelled.")
        return HandlerResult(success="cancelled")

    async def render_updated(self, reply: ReplyContext) -> str:
        user_id = reply.payload.user_id or str(reply.raw.get("target_user_id") or "")
        role = reply.payload.role
        guild_id = reply.guild_id
        if not guild_id:
            return "Failed to update role: guild ID missing from reply"
        config = self.cached_guild_config(guild_id)
        if config is None:
            self.spawn(self._sync_role_when_loaded(guild_id, user_id, role))
            return ROLE_UPDATE_COMPLETED
        role_id = config.role_ids().get(role, "")
        if not role_id:
            return f"Failed to update role: no Discord role configured for '{role}'"
        try:
            await self._sync_role(guild_id, user_id, role, role_id)
        except DiscordAPIError as exc:
            return f"Role updated in application, but failed to sync with Discord: {exc}"
        return ROLE_UPDATE_COMPLETED

    async def _sync_role(self, guild_id: str, user_id: str, role: str, role_id: str) -> None:
        try:
            await self._session.add_member_role(
                guild_id=guild_id, user_id=user_id, role_id=role_id
            )
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "role.sync.failed",
                guild_id=guild_id,
                user_id=user_id,
                role=role,
                exc=exc,
            )
            raise

    async def _sync_role_when_loaded(self, guild_id: str, user_id: str, role: str) -> None:
        try:
            config = await self.guild_config(
                guild_id, timeout_seconds=BACKGROUND_CONFIG_TIMEOUT_SECONDS
            )
        except GuildConfigError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "role.sync.config_unavailable",
                guild_id=guild_id,
                user_id=user_id,
                exc=exc,
            )
            return
        role_id = config.role_ids().get(role, "")
        if not role_id:
            log_event(
                self._logger,
                logging.WARNING,
                "role.sync.unknown_role",
                guild_id=guild_id,
                role=role,
            )
            return
        with contextlib.suppress(DiscordAPIError):
            await self._sync_role(guild_id, user_id, role, role_id)

    async def render_failed(self, reply: ReplyContext) -> str:
        return f"Failed to update role: {reply.payload.failure_reason or 'unknown error'}"

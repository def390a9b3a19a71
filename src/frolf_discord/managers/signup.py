from __future__ import annotations

import logging
from typing import Any, Optional

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import SignupRequestPayload, UserProfileUpdatedPayload
from ..core.guild_config import GuildConfigError
from ..core.logging_utils import log_event
from ..core.results import HandlerResult
from ..integrations.discord.components import (
    DISCORD_BUTTON_STYLE_PRIMARY,
    build_action_row,
    build_button,
    build_modal,
    build_text_input,
)
from ..integrations.discord.emoji import emoji_matches
from ..integrations.discord.errors import DiscordAPIError
from ..integrations.discord.interactions import (
    InteractionKind,
    extract_modal_values,
    parse_custom_id,
)
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BACKGROUND_CONFIG_TIMEOUT_SECONDS, BaseManager, ManagerDeps

SIGNUP_BUTTON_PREFIX = "signup_button"
SIGNUP_MODAL_PREFIX = "signup_modal"
TAG_INPUT_ID = "tag_number"

SIGNUP_PROMPT = "Click the button below to start signup:"
SIGNUP_PROCESSING = "Signup request submitted successfully! Processing..."
SIGNUP_SUCCESS = "🎉 Signup successful! Welcome!"
SIGNUP_FAILED = "❌ Signup failed. Please try again."


class InvalidTagNumber(ValueError):
    pass


def parse_tag_number(raw: Optional[str]) -> Optional[int]:
    """Optional tag from modal text: empty means no tag, anything else must be a positive integer."""
    text = (raw or "").strip()
    if not text:
        return None
    try:
        value = int(text)
    except ValueError:
        raise InvalidTagNumber(
            f"tag number must be a valid number, received '{text}'"
        ) from None
    if value <= 0:
        raise InvalidTagNumber(f"tag number must be positive, received '{text}'")
    return value


def signup_button_id(user_id: str, guild_id: str) -> str:
    return f"{SIGNUP_BUTTON_PREFIX}|{user_id}|guild_id={guild_id}"


def signup_modal_id(guild_id: str) -> str:
    return f"{SIGNUP_MODAL_PREFIX}|guild_id={guild_id}"


def build_signup_modal(guild_id: str) -> dict[str, Any]:
    return build_modal(
        signup_modal_id(guild_id),
        "Frolf Club Signup",
        [
            build_text_input(
                TAG_INPUT_ID,
                "Tag Number (Optional)",
                placeholder="Enter your desired tag number (e.g., 13)",
                required=False,
                min_length=0,
                max_length=3,
            )
        ],
    )


class SignupManager(BaseManager):
    """Reaction, DM button and modal flow that turns a member into a club player."""

    name = "signup"

    def __init__(
        self, deps: ManagerDeps, *, bot_user_id: Optional[str] = None
    ) -> None:
        super().__init__(deps)
        self.bot_user_id = bot_user_id

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            SIGNUP_BUTTON_PREFIX,
            self.handle_button,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
            dm_bypass=True,
        )
        registry.register(
            SIGNUP_MODAL_PREFIX,
            self.handle_modal_submit,
            kinds=[InteractionKind.MODAL_SUBMIT],
            prefix=True,
            dm_bypass=True,
        )
        registry.register_reaction(self.handle_reaction)

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.USER_CREATED, self.render_created)
        router.register(topics.USER_CREATION_FAILED, self.render_failed)
        router.register(topics.USER_PROFILE_SYNC_REQUEST, self.sync_member)

    async def handle_reaction(self, payload: dict[str, Any]) -> HandlerResult:
        guild_id = str(payload.get("guild_id") or "")
        user_id = str(payload.get("user_id") or "")
        if not guild_id or not user_id:
            return HandlerResult.failed("reaction outside a guild")
        member = payload.get("member")
        member_user = member.get("user") if isinstance(member, dict) else None
        if (self.bot_user_id and user_id == self.bot_user_id) or (
            isinstance(member_user, dict) and member_user.get("bot")
        ):
            return HandlerResult(success="ignored bot reaction")

        try:
            config = await self.guild_config(guild_id)
        except GuildConfigError as exc:
            log_event(
                self._logger,
                logging.INFO,
                "signup.reaction.config_unavailable",
                guild_id=guild_id,
                exc=exc,
            )
            return HandlerResult.failed("guild config unavailable")
        if not config.is_complete:
            return HandlerResult.failed("guild not set up")

        emoji = payload.get("emoji")
        emoji_name = str(emoji.get("name") or "") if isinstance(emoji, dict) else ""
        channel_id = str(payload.get("channel_id") or "")
        message_id = str(payload.get("message_id") or "")
        if (
            channel_id != config.signup_channel_id
            or (config.signup_message_id and message_id != config.signup_message_id)
            or not emoji_matches(emoji_name, config.signup_emoji)
        ):
            log_event(
                self._logger,
                logging.DEBUG,
                "signup.reaction.mismatch",
                guild_id=guild_id,
                channel_id=channel_id,
                message_id=message_id,
                emoji=emoji_name,
            )
            return HandlerResult(success="not a signup reaction")

        dm_channel_id = await self._session.open_dm_channel(user_id=user_id)
        await self._session.send_channel_message(
            channel_id=dm_channel_id,
            payload={
                "content": SIGNUP_PROMPT,
                "components": [
                    build_action_row(
                        [
                            build_button(
                                "Signup",
                                signup_button_id(user_id, guild_id),
                                style=DISCORD_BUTTON_STYLE_PRIMARY,
                            )
                        ]
                    )
                ],
            },
        )
        log_event(
            self._logger,
            logging.INFO,
            "signup.dm.sent",
            guild_id=guild_id,
            user_id=user_id,
        )
        return HandlerResult(success="dm sent")

    async def handle_button(self, ctx: InteractionContext) -> HandlerResult:
        _prefix, _positional, pairs = parse_custom_id(ctx.key)
        guild_id = self.guild_id_for(ctx.handle, pairs.get("guild_id", ""))
        await self.open_modal(ctx.handle, build_signup_modal(guild_id))
        return HandlerResult(success="modal sent")

    async def handle_modal_submit(self, ctx: InteractionContext) -> HandlerResult:
        _prefix, _positional, pairs = parse_custom_id(ctx.key)
        guild_id = self.guild_id_for(ctx.handle, pairs.get("guild_id", ""))
        if not guild_id:
            await self.respond(ctx.handle, SIGNUP_FAILED)
            return HandlerResult.failed("no guild for signup")

        try:
            tag_number = parse_tag_number(extract_modal_values(ctx.payload).get(TAG_INPUT_ID))
        except InvalidTagNumber as exc:
            await self.respond(
                ctx.handle, f"Invalid tag number: {exc}. Example: 13"
            )
            return HandlerResult.failed(str(exc))

        await self.respond(ctx.handle, SIGNUP_PROCESSING)
        payload = SignupRequestPayload(
            guild_id=guild_id, user_id=ctx.user_id, tag_number=tag_number
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.USER_SIGNUP_REQUEST,
                payload,
                ctx.handle,
                guild_id=guild_id,
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def render_created(self, reply: ReplyContext) -> str:
        guild_id = reply.guild_id
        user_id = reply.payload.user_id or reply.metadata_user_id
        if not guild_id or not user_id:
            return SIGNUP_SUCCESS
        config = self.cached_guild_config(guild_id)
        if config is None:
            self.spawn(self._add_registered_role_when_loaded(guild_id, user_id))
            return SIGNUP_SUCCESS
        if config.registered_role_id and not await self._add_registered_role(
            guild_id, user_id, config.registered_role_id
        ):
            return SIGNUP_FAILED
        return SIGNUP_SUCCESS

    async def _add_registered_role(self, guild_id: str, user_id: str, role_id: str) -> bool:
        try:
            await self._session.add_member_role(
                guild_id=guild_id, user_id=user_id, role_id=role_id
            )
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "signup.role.add_failed",
                guild_id=guild_id,
                user_id=user_id,
                exc=exc,
            )
            return False
        return True

    async def _add_registered_role_when_loaded(self, guild_id: str, user_id: str) -> None:
        try:
            config = await self.guild_config(
                guild_id, timeout_seconds=BACKGROUND_CONFIG_TIMEOUT_SECONDS
            )
        except GuildConfigError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "signup.role.config_unavailable",
                guild_id=guild_id,
                user_id=user_id,
                exc=exc,
            )
            return
        if config.registered_role_id:
            await self._add_registered_role(guild_id, user_id, config.registered_role_id)

    async def render_failed(self, reply: ReplyContext) -> str:
        log_event(
            self._logger,
            logging.WARNING,
            "signup.failed",
            guild_id=reply.guild_id,
            correlation_id=reply.correlation_id,
            reason=reply.payload.failure_reason,
        )
        return SIGNUP_FAILED

    async def sync_member(self, reply: ReplyContext) -> None:
        """Answer a backend profile sync request with the member's current Discord profile.

        Best effort: failures are logged and the request is not retried.
        """
        guild_id = reply.guild_id
        user_id = reply.payload.user_id or reply.metadata_user_id
        if not guild_id or not user_id:
            return None
        try:
            member = await self._session.get_guild_member(
                guild_id=guild_id, user_id=user_id
            )
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "signup.profile.fetch_failed",
                guild_id=guild_id,
                user_id=user_id,
                exc=exc,
            )
            return None
        user = member.get("user")
        if not isinstance(user, dict) or not user.get("id"):
            log_event(
                self._logger,
                logging.WARNING,
                "signup.profile.member_not_found",
                guild_id=guild_id,
                user_id=user_id,
            )
            return None
        username = str(user.get("username") or "")
        payload = UserProfileUpdatedPayload(
            guild_id=guild_id,
            user_id=str(user["id"]),
            username=username,
            display_name=str(member.get("nick") or username),
            avatar_hash=str(user.get("avatar") or ""),
        )
        try:
            await self.publish(
                topics.USER_PROFILE_UPDATED,
                payload,
                guild_id=guild_id,
                user_id=payload.user_id,
            )
        except PublishError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "signup.profile.publish_failed",
                guild_id=guild_id,
                user_id=user_id,
                exc=exc,
            )
        return None

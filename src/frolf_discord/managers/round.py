from __future__ import annotations

from typing import Any

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import RoundCreationRequestPayload
from ..core.results import HandlerResult
from ..integrations.discord.components import (
    DISCORD_TEXT_INPUT_PARAGRAPH,
    build_modal,
    build_text_input,
)
from ..integrations.discord.interactions import InteractionKind, extract_modal_values
from ..integrations.discord.permissions import PermissionLevel
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager

CREATE_ROUND_COMMAND_NAME = "createround"
CREATE_ROUND_MODAL_ID = "create_round_modal"

MAX_TITLE_LENGTH = 100

ROUND_REQUEST_RECEIVED = "Round creation request received. Please wait for confirmation."


def build_create_round_modal() -> dict[str, Any]:
    return build_modal(
        CREATE_ROUND_MODAL_ID,
        "Create Round",
        [
            build_text_input(
                "title",
                "Title",
                placeholder="Enter the round title",
                max_length=MAX_TITLE_LENGTH,
            ),
            build_text_input(
                "description",
                "Description",
                style=DISCORD_TEXT_INPUT_PARAGRAPH,
                placeholder="Enter a description (Optional)",
                required=False,
                max_length=500,
            ),
            build_text_input(
                "start_time",
                "Start Time",
                placeholder="YYYY-MM-DD HH:MM or 'tomorrow 6pm'",
            ),
            build_text_input(
                "timezone",
                "Timezone (Optional)",
                placeholder="America/Chicago",
                required=False,
            ),
            build_text_input(
                "location",
                "Location",
                placeholder="Enter the location (Optional)",
                required=False,
                max_length=100,
            ),
        ],
    )


def validate_round_form(values: dict[str, str]) -> list[str]:
    errors: list[str] = []
    title = values.get("title", "").strip()
    if not title:
        errors.append("Title is required.")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"Title must be less than {MAX_TITLE_LENGTH} characters.")
    if not values.get("start_time", "").strip():
        errors.append("Start Time is required.")
    return errors


class RoundManager(BaseManager):
    """``/createround``: modal in, ``round.creation.requested`` out."""

    name = "round"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            CREATE_ROUND_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
            permission=PermissionLevel.PLAYER,
            requires_setup=True,
        )
        registry.register(
            CREATE_ROUND_MODAL_ID,
            self.handle_modal_submit,
            kinds=[InteractionKind.MODAL_SUBMIT],
            prefix=True,
            permission=PermissionLevel.PLAYER,
            requires_setup=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.ROUND_CREATED, self.render_created)
        router.register(topics.ROUND_CREATION_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        await self.open_modal(ctx.handle, build_create_round_modal())
        return HandlerResult(success="modal sent")

    async def handle_modal_submit(self, ctx: InteractionContext) -> HandlerResult:
        values = extract_modal_values(ctx.payload)
        errors = validate_round_form(values)
        if errors:
            await self.respond(
                ctx.handle, "❌ " + "\n".join(errors) + " Please try again."
            )
            return HandlerResult.failed("; ".join(errors))

        start_time = values["start_time"].strip()
        timezone = values.get("timezone", "").strip()
        if timezone:
            start_time = f"{start_time} {timezone}"

        await self.respond(ctx.handle, ROUND_REQUEST_RECEIVED)
        payload = RoundCreationRequestPayload(
            guild_id=ctx.guild_id,
            user_id=ctx.user_id,
            title=values["title"].strip(),
            start_time=start_time,
            location=values.get("location", "").strip(),
            description=values.get("description", "").strip(),
            channel_id=ctx.handle.channel_id,
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.ROUND_CREATION_REQUESTED, payload, ctx.handle
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def render_created(self, reply: ReplyContext) -> str:
        return f"✅ Round created successfully! Round ID: {reply.payload.round_id}"

    async def render_failed(self, reply: ReplyContext) -> str:
        return f"❌ Round creation failed: {reply.payload.failure_reason or 'unknown error'}"

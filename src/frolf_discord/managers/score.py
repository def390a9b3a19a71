from __future__ import annotations

import uuid
from typing import Any, Optional

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import ScoreUpdateRequestPayload
from ..core.results import HandlerResult
from ..integrations.discord.components import build_modal, build_text_input
from ..integrations.discord.interactions import (
    InteractionKind,
    extract_modal_values,
    parse_custom_id,
)
from ..integrations.discord.permissions import PermissionLevel
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager

ENTER_SCORE_PREFIX = "enter_score"
SUBMIT_SCORE_MODAL_PREFIX = "submit_score_modal"
SCORE_INPUT_ID = "score_input"

# Relative to par.
SCORE_MIN = -36
SCORE_MAX = 72

INVALID_ROUND = "Invalid round information. Please try again."
SCORE_MISSING = "Could not read your score. Please try again."


class InvalidScore(ValueError):
    pass


def parse_score(raw: Optional[str]) -> int:
    """Score text such as ``-3``, ``0`` or ``+5`` as an int within the allowed range."""
    text = (raw or "").strip()
    if not text:
        raise InvalidScore(SCORE_MISSING)
    try:
        value = int(text)
    except ValueError:
        raise InvalidScore(
            "Invalid score. Please enter a valid number (e.g., -3, 0, +5)."
        ) from None
    if value < SCORE_MIN or value > SCORE_MAX:
        raise InvalidScore(
            f"Invalid score: {value}. Scores must be between {SCORE_MIN} and +{SCORE_MAX}."
        )
    return value


def enter_score_button_id(round_id: str) -> str:
    return f"{ENTER_SCORE_PREFIX}|{round_id}"


def score_modal_id(round_id: str, user_id: str) -> str:
    return f"{SUBMIT_SCORE_MODAL_PREFIX}|{round_id}|{user_id}"


def build_score_modal(round_id: str, user_id: str) -> dict[str, Any]:
    return build_modal(
        score_modal_id(round_id, user_id),
        "Submit Your Score",
        [
            build_text_input(
                SCORE_INPUT_ID,
                "Enter your score (e.g., -3, 0, +5)",
                placeholder="Enter your disc golf score",
                max_length=4,
            )
        ],
    )


def _valid_round_id(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class ScoreManager(BaseManager):
    """``Enter Score`` button on a round message, the score modal, and its replies."""

    name = "score"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            ENTER_SCORE_PREFIX,
            self.handle_button,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
            permission=PermissionLevel.PLAYER,
            requires_setup=True,
        )
        registry.register(
            SUBMIT_SCORE_MODAL_PREFIX,
            self.handle_modal_submit,
            kinds=[InteractionKind.MODAL_SUBMIT],
            prefix=True,
            permission=PermissionLevel.PLAYER,
            requires_setup=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.SCORE_UPDATED, self.render_updated)
        router.register(topics.SCORE_UPDATE_FAILED, self.render_failed)

    async def handle_button(self, ctx: InteractionContext) -> HandlerResult:
        _prefix, positional, _pairs = parse_custom_id(ctx.key)
        round_id = positional[0] if positional else ""
        if not _valid_round_id(round_id):
            await self.respond(ctx.handle, INVALID_ROUND)
            return HandlerResult.failed(f"invalid round id in {ctx.key}")
        await self.open_modal(ctx.handle, build_score_modal(round_id, ctx.user_id))
        return HandlerResult(success="modal sent")

    async def handle_modal_submit(self, ctx: InteractionContext) -> HandlerResult:
        _prefix, positional, _pairs = parse_custom_id(ctx.key)
        round_id = positional[0] if positional else ""
        if not _valid_round_id(round_id):
            await self.respond(ctx.handle, INVALID_ROUND)
            return HandlerResult.failed(f"invalid round id in {ctx.key}")
        try:
            score = parse_score(extract_modal_values(ctx.payload).get(SCORE_INPUT_ID))
        except InvalidScore as exc:
            await self.respond(ctx.handle, str(exc))
            return HandlerResult.failed(str(exc))

        # The modal is opened from the round message, so that is the message to update.
        message_id = ctx.handle.message_id or ""
        await self.defer(ctx.handle)
        payload = ScoreUpdateRequestPayload(
            guild_id=ctx.guild_id,
            round_id=round_id,
            user_id=ctx.user_id,
            score=score,
            channel_id=ctx.handle.channel_id,
            message_id=message_id,
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.SCORE_UPDATE_REQUEST, payload, ctx.handle
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def render_updated(self, reply: ReplyContext) -> str:
        if reply.payload.score is None:
            return "✅ Score updated."
        return f"✅ Your score of {reply.payload.score:+d} has been recorded."

    async def render_failed(self, reply: ReplyContext) -> str:
        return f"❌ Score update failed: {reply.payload.failure_reason or 'unknown error'}"

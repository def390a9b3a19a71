from __future__ import annotations

from typing import Optional

from ..bus import topics
from ..bus.base import PublishError
from ..bus.payloads import TagClaimRequestPayload
from ..core.results import HandlerResult
from ..integrations.discord.interactions import InteractionKind, extract_command_options
from ..integrations.discord.permissions import PermissionLevel
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager

CLAIM_TAG_COMMAND_NAME = "claimtag"
MIN_TAG_NUMBER = 1
MAX_TAG_NUMBER = 100


def parse_claim_tag(value: object) -> Optional[int]:
    """Tag option as an int in ``1..100``, or None."""
    if isinstance(value, bool):
        return None
    try:
        tag = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if tag < MIN_TAG_NUMBER or tag > MAX_TAG_NUMBER:
        return None
    return tag


class ClaimTagManager(BaseManager):
    name = "claimtag"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            CLAIM_TAG_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
            permission=PermissionLevel.PLAYER,
            requires_setup=True,
        )

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.LEADERBOARD_TAG_CLAIMED, self.render_claimed)
        router.register(topics.LEADERBOARD_TAG_CLAIM_FAILED, self.render_failed)

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        tag = parse_claim_tag(extract_command_options(ctx.payload).get("tag"))
        if tag is None:
            await self.respond(
                ctx.handle,
                f"Tag number must be between {MIN_TAG_NUMBER} and {MAX_TAG_NUMBER}, "
                "e.g. `/claimtag 13`.",
            )
            return HandlerResult.failed("tag number out of range")

        await self.defer(ctx.handle)
        payload = TagClaimRequestPayload(
            guild_id=ctx.guild_id,
            user_id=ctx.user_id,
            tag_number=tag,
            channel_id=ctx.handle.channel_id,
        )
        try:
            correlation_id = await self.park_and_publish(
                topics.LEADERBOARD_TAG_CLAIM_REQUEST, payload, ctx.handle
            )
        except PublishError as exc:
            return await self.publish_failed(ctx.handle, exc, acknowledged=True)
        return HandlerResult(success=correlation_id)

    async def render_claimed(self, reply: ReplyContext) -> str:
        if reply.payload.tag_number is None:
            return "✅ Successfully claimed your tag!"
        return f"✅ Successfully claimed tag #{reply.payload.tag_number}!"

    async def render_failed(self, reply: ReplyContext) -> str:
        reason = reply.payload.failure_reason or "unknown error"
        if reply.payload.tag_number is None:
            return f"❌ Could not claim tag: {reason}"
        return f"❌ Could not claim tag #{reply.payload.tag_number}: {reason}"

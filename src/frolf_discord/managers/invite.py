from __future__ import annotations

from ..core.results import HandlerResult
from ..integrations.discord.interactions import InteractionKind
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from .base import BaseManager

INVITE_COMMAND_NAME = "invite"


def invite_message(pwa_base_url: str) -> str:
    return f"Manage your club's invite links at: {pwa_base_url.rstrip('/')}/account"


class InviteManager(BaseManager):
    name = "invite"

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            INVITE_COMMAND_NAME,
            self.handle_command,
            kinds=[InteractionKind.SLASH_COMMAND],
            requires_setup=True,
        )

    async def handle_command(self, ctx: InteractionContext) -> HandlerResult:
        if not self._config.pwa_base_url:
            await self.respond(ctx.handle, "Invite links are not configured for this bot.")
            return HandlerResult.failed("pwa.base_url is not configured")
        await self.respond(ctx.handle, invite_message(self._config.pwa_base_url))
        return HandlerResult(success="invite link sent")

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

from ...bus import topics
from ...bus.base import EventBus
from ...bus.envelope import build_envelope
from ...bus.memory import InMemoryBus
from ...bus.payloads import GuildConfigRetrievalPayload
from ...bus.redis_streams import RedisStreamBus
from ...core.config import BotConfig
from ...core.correlation_store import CorrelationStore
from ...core.guild_config import GuildConfigError, GuildConfigResolver
from ...core.logging_utils import log_event
from ...core.pending_uploads import PendingUploadMap
from ...managers.base import BaseManager, ManagerDeps
from ...managers.claimtag import ClaimTagManager
from ...managers.invite import InviteManager
from ...managers.reset import ResetManager
from ...managers.role import RoleManager
from ...managers.round import RoundManager
from ...managers.score import ScoreManager
from ...managers.scorecard_upload import ScorecardUploadManager
from ...managers.setup import SetupManager
from ...managers.signup import SignupManager
from ...managers.udisc import UDiscManager
from .command_registry import sync_guild_commands
from .commands import build_application_commands, build_setup_commands
from .gateway import DiscordGatewayClient
from .registry import InteractionRegistry
from .reply_router import ReplyRouter
from .rest import DiscordRestClient
from .session import DiscordSession, RestDiscordSession

# Startup and guild-join lookups are not racing Discord's 3 second ack window.
GUILD_PREPARE_TIMEOUT_SECONDS = 10.0


class FrolfBotService:
    def __init__(
        self,
        config: BotConfig,
        *,
        logger: logging.Logger,
        session: Optional[DiscordSession] = None,
        bus: Optional[EventBus] = None,
        gateway_client: Optional[DiscordGatewayClient] = None,
    ) -> None:
        self._config = config
        self._logger = logger

        if session is None:
            bot_token, application_id = config.require_credentials()
            session = RestDiscordSession(
                DiscordRestClient(bot_token=bot_token),
                application_id=application_id,
                logger=logger,
            )
        self._session = session

        self._bus = (
            bus
            if bus is not None
            else RedisStreamBus.from_settings(config.bus, logger=logger)
        )

        self._gateway = (
            gateway_client
            if gateway_client is not None
            else DiscordGatewayClient(
                bot_token=config.discord.bot_token or "",
                intents=config.discord.intents,
                logger=logger,
            )
        )
        self._owns_gateway = gateway_client is None

        timings = config.timings
        self.store = CorrelationStore(
            logger=logger,
            default_ttl_seconds=timings.correlation_ttl_seconds,
            sweep_interval_seconds=timings.sweep_interval_seconds,
        )
        self.pending_uploads = PendingUploadMap(
            logger=logger,
            default_ttl_seconds=timings.pending_upload_ttl_seconds,
            sweep_interval_seconds=timings.sweep_interval_seconds,
        )
        self.resolver = GuildConfigResolver(
            self._request_guild_config,
            logger=logger,
            ttl_seconds=timings.guild_config_ttl_seconds,
        )
        self.registry = InteractionRegistry(
            session=self._session,
            resolver=self.resolver,
            logger=logger,
            config_lookup_timeout_seconds=timings.guild_config_lookup_timeout_seconds,
        )
        self.router = ReplyRouter(
            bus=self._bus,
            store=self.store,
            session=self._session,
            resolver=self.resolver,
            logger=logger,
            consumer_group=config.bus.consumer_group,
            suppressed_reasons=config.suppressed_reasons,
        )

        deps = ManagerDeps(
            session=self._session,
            bus=self._bus,
            store=self.store,
            resolver=self.resolver,
            config=config,
            logger=logger,
        )
        self.signup = SignupManager(deps)
        self.managers: list[BaseManager] = [
            self.signup,
            RoleManager(deps),
            ResetManager(deps),
            UDiscManager(deps),
            InviteManager(deps),
            ClaimTagManager(deps),
            RoundManager(deps),
            SetupManager(deps, on_setup_completed=self._prepare_in_background),
            ScoreManager(deps),
            ScorecardUploadManager(deps, pending=self.pending_uploads),
        ]
        for manager in self.managers:
            manager.register(self.registry)
            register_replies = getattr(manager, "register_replies", None)
            if register_replies is not None:
                register_replies(self.router)
        self.registry.freeze()

        self._background: set[asyncio.Task[Any]] = set()

    async def run_forever(self) -> None:
        sweeper_tasks = [
            asyncio.create_task(self.store.run_sweeper()),
            asyncio.create_task(self.pending_uploads.run_sweeper()),
        ]
        router_task = asyncio.create_task(self.router.run())
        try:
            log_event(
                self._logger,
                logging.INFO,
                "discord.bot.starting",
                registrations=self.registry.keys(),
                reply_topics=self.router.topics,
            )
            await self._gateway.run(self._on_dispatch)
        finally:
            drained = await self.registry.wait_idle(
                self._config.bus.publish_drain_seconds
            )
            if not drained:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.bot.drain_timeout",
                    pending=self.registry.pending_count,
                )
            await self.registry.cancel_pending()
            await self.router.close()
            for manager in self.managers:
                await manager.close()
            for task in [router_task, *sweeper_tasks, *self._background]:
                task.cancel()
            for task in [router_task, *sweeper_tasks, *self._background]:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
            await self._shutdown()

    async def stop(self) -> None:
        await self._gateway.stop()

    async def _shutdown(self) -> None:
        if self._owns_gateway:
            with contextlib.suppress(Exception):
                await self._gateway.stop()
        with contextlib.suppress(Exception):
            await self.store.close()
        with contextlib.suppress(Exception):
            await self.pending_uploads.close()
        self.resolver.close()
        with contextlib.suppress(Exception):
            await self._bus.close()
        with contextlib.suppress(Exception):
            await self._session.close()
        log_event(self._logger, logging.INFO, "discord.bot.stopped")

    async def _on_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type == "INTERACTION_CREATE":
            self.registry.dispatch(payload)
        elif event_type == "MESSAGE_REACTION_ADD":
            self.registry.dispatch_reaction(payload)
        elif event_type == "MESSAGE_CREATE":
            self.registry.dispatch_message(payload)
        elif event_type == "READY":
            user = payload.get("user")
            if isinstance(user, dict) and user.get("id"):
                self.signup.bot_user_id = str(user["id"])
            guild_ids = {
                str(guild.get("id"))
                for guild in payload.get("guilds") or []
                if isinstance(guild, dict) and guild.get("id")
            }
            if self._config.discord.guild_id:
                guild_ids.add(self._config.discord.guild_id)
            log_event(
                self._logger,
                logging.INFO,
                "discord.bot.ready",
                bot_user_id=self.signup.bot_user_id,
                guild_count=len(guild_ids),
            )
            for guild_id in sorted(guild_ids):
                self._spawn(self.prepare_guild(guild_id))
        elif event_type == "GUILD_CREATE":
            guild_id = str(payload.get("id") or "")
            if guild_id:
                self._spawn(self.prepare_guild(guild_id))

    async def _prepare_in_background(self, guild_id: str) -> None:
        # Runs inside a reply renderer; the config reply it waits for arrives on
        # the same router loop.
        self._spawn(self.prepare_guild(guild_id))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _request_guild_config(self, guild_id: str) -> None:
        envelope = build_envelope(
            GuildConfigRetrievalPayload(guild_id=guild_id),
            topics.GUILD_CONFIG_RETRIEVAL_REQUESTED,
            guild_id=guild_id,
            require_user=False,
        )
        await self._bus.publish(topics.GUILD_CONFIG_RETRIEVAL_REQUESTED, envelope)
        log_event(
            self._logger,
            logging.DEBUG,
            "guild_config.fetch.requested",
            guild_id=guild_id,
            correlation_id=envelope.correlation_id,
        )

    async def prepare_guild(self, guild_id: str) -> list[str]:
        """Reconcile ``guild_id``'s slash commands against its config.

        Every guild carries ``/frolf-setup`` so it can be set up from inside
        Discord; the rest are added only once its setup is complete.
        """
        if not self._config.discord.sync_commands_on_startup:
            return []
        commands = build_setup_commands()
        try:
            config = await self.resolver.get(
                guild_id, timeout_seconds=GUILD_PREPARE_TIMEOUT_SECONDS
            )
        except GuildConfigError as exc:
            log_event(
                self._logger,
                logging.INFO,
                "discord.guild.config_unavailable",
                guild_id=guild_id,
                exc=exc,
            )
        else:
            if config.is_complete:
                commands = build_application_commands()
        return await sync_guild_commands(
            self._session,
            guild_id=guild_id,
            commands=commands,
            logger=self._logger,
        )


async def register_guild_commands(
    config: BotConfig, *, guild_id: str, logger: logging.Logger
) -> list[str]:
    """One-shot command reconciliation for ``guild_id`` outside the gateway loop."""
    bot_token, application_id = config.require_credentials()
    session = RestDiscordSession(
        DiscordRestClient(bot_token=bot_token),
        application_id=application_id,
        logger=logger,
    )
    try:
        return await sync_guild_commands(
            session,
            guild_id=guild_id,
            commands=build_application_commands(),
            logger=logger,
        )
    finally:
        await session.close()


def create_bot_service(
    config: BotConfig, *, logger: logging.Logger, dry_run: bool = False
) -> FrolfBotService:
    bus: Optional[EventBus] = InMemoryBus() if dry_run else None
    return FrolfBotService(config, logger=logger, bus=bus)

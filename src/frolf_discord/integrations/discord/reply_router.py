"""Delivers backend replies to the Discord interaction that asked for them.

Replies are joined to requests by ``correlation_id`` only. A parked handle gets
its original response edited; without one the router falls back to a plain
message in the channel named in the reply, and otherwise drops the reply.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from ...bus import topics
from ...bus.base import Delivery, EventBus, Subscription
from ...bus.envelope import (
    META_CHANNEL_ID,
    META_GUILD_ID,
    META_MESSAGE_ID,
    META_USER_ID,
    Envelope,
    EnvelopeError,
    parse_payload,
    payload_dict,
)
from ...bus.payloads import ReplyPayload
from ...core.correlation_store import CorrelationStore
from ...core.guild_config import GuildConfig, GuildConfigResolver
from ...core.logging_utils import log_event
from .errors import DiscordAPIError, DiscordTransientError
from .interactions import InteractionHandle
from .rendering import truncate_for_discord
from .session import DiscordSession

Renderer = Callable[["ReplyContext"], Awaitable[Optional[str]]]

OUTCOME_EDITED = "edited"
OUTCOME_CHANNEL = "channel_message"
OUTCOME_DROPPED = "dropped"
OUTCOME_SUPPRESSED = "suppressed"
OUTCOME_RETRY = "retry"
OUTCOME_CONFIG = "config"
OUTCOME_HANDLED = "handled"


@dataclass(frozen=True)
class ReplyContext:
    topic: str
    envelope: Envelope
    payload: ReplyPayload
    raw: dict[str, Any]
    handle: Optional[InteractionHandle]

    @property
    def correlation_id(self) -> str:
        return self.envelope.correlation_id

    @property
    def guild_id(self) -> str:
        return (
            self.payload.guild_id
            or self.envelope.metadata.get(META_GUILD_ID, "")
            or (self.handle.guild_id if self.handle else "")
        )

    @property
    def metadata_user_id(self) -> str:
        return self.envelope.metadata.get(META_USER_ID, "")

    @property
    def channel_id(self) -> str:
        return self.envelope.metadata.get(META_CHANNEL_ID, "") or self.payload.channel_id

    @property
    def message_id(self) -> str:
        return self.envelope.metadata.get(META_MESSAGE_ID, "") or self.payload.message_id


class ReplyRouter:
    def __init__(
        self,
        *,
        bus: EventBus,
        store: CorrelationStore,
        session: DiscordSession,
        resolver: GuildConfigResolver,
        logger: logging.Logger,
        consumer_group: str,
        suppressed_reasons: Iterable[str] = (),
    ) -> None:
        self._bus = bus
        self._store = store
        self._session = session
        self._resolver = resolver
        self._logger = logger
        self._group = consumer_group
        self._suppressed = tuple(
            reason.lower() for reason in suppressed_reasons if reason.strip()
        )
        self._renderers: dict[str, Renderer] = {}
        self._subscription: Optional[Subscription] = None
        self._closed = False

    def register(self, topic: str, renderer: Renderer) -> None:
        if topic in self._renderers:
            raise ValueError(f"reply renderer already registered for {topic}")
        self._renderers[topic] = renderer

    @property
    def topics(self) -> tuple[str, ...]:
        return tuple(sorted(set(self._renderers) | set(topics.GUILD_CONFIG_TOPICS)))

    def is_suppressed(self, reason: str) -> bool:
        lowered = (reason or "").lower()
        return bool(lowered) and any(token in lowered for token in self._suppressed)

    async def run(self) -> None:
        """Consume replies until closed; one message in flight at a time."""
        self._subscription = self._bus.subscribe(self.topics, group=self._group)
        log_event(
            self._logger,
            logging.INFO,
            "discord.reply.subscribed",
            topics=self.topics,
            group=self._group,
        )
        try:
            async for delivery in self._subscription:
                if self._closed:
                    break
                await self.handle_delivery(delivery)
        finally:
            await self._subscription.close()

    async def close(self) -> None:
        self._closed = True
        if self._subscription is not None:
            await self._subscription.close()

    async def handle_delivery(self, delivery: Delivery) -> str:
        try:
            outcome = await self.process(delivery.topic, delivery.envelope)
        except asyncio.CancelledError:
            raise
        except DiscordTransientError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.reply.retry",
                topic=delivery.topic,
                correlation_id=delivery.envelope.correlation_id,
                exc=exc,
            )
            await delivery.nack()
            return OUTCOME_RETRY
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.reply.failed",
                topic=delivery.topic,
                correlation_id=delivery.envelope.correlation_id,
                exc=exc,
            )
            await delivery.ack()
            return OUTCOME_DROPPED
        await delivery.ack()
        return outcome

    async def process(self, topic: str, envelope: Envelope) -> str:
        """Apply one reply; raises ``DiscordTransientError`` when it should be redelivered."""
        if topic in topics.GUILD_CONFIG_TOPICS:
            self._apply_config_event(topic, envelope)
            if topic not in self._renderers:
                return OUTCOME_CONFIG

        renderer = self._renderers.get(topic)
        if renderer is None:
            log_event(self._logger, logging.DEBUG, "discord.reply.unhandled_topic", topic=topic)
            return OUTCOME_DROPPED

        correlation_id = envelope.correlation_id
        if not correlation_id and topic not in topics.UNCORRELATED_TOPICS:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.reply.missing_correlation",
                topic=topic,
                envelope_id=envelope.uuid,
            )
            return OUTCOME_DROPPED

        raw = payload_dict(envelope)
        reply = parse_payload(envelope, ReplyPayload)
        if self.is_suppressed(reply.failure_reason):
            log_event(
                self._logger,
                logging.INFO,
                "discord.reply.suppressed",
                topic=topic,
                correlation_id=correlation_id,
                reason=reply.failure_reason,
            )
            if correlation_id:
                await self._store.delete(correlation_id)
            return OUTCOME_SUPPRESSED

        handle = await self._store.get(correlation_id) if correlation_id else None
        context = ReplyContext(
            topic=topic, envelope=envelope, payload=reply, raw=raw, handle=handle
        )
        content = await renderer(context)
        if handle is not None:
            if content:
                await self._edit_original(handle, content)
            await self._store.delete(correlation_id)
            log_event(
                self._logger,
                logging.INFO,
                "discord.reply.delivered",
                topic=topic,
                correlation_id=correlation_id,
                interaction_id=handle.interaction_id,
            )
            return OUTCOME_EDITED

        if content and context.channel_id:
            await self._send_channel_fallback(context, content)
            return OUTCOME_CHANNEL
        if content is None or not correlation_id:
            return OUTCOME_HANDLED

        log_event(
            self._logger,
            logging.INFO,
            "discord.reply.unknown_correlation",
            topic=topic,
            correlation_id=correlation_id,
        )
        return OUTCOME_DROPPED

    async def _edit_original(self, handle: InteractionHandle, content: str) -> None:
        try:
            await self._session.edit_original_response(
                token=handle.token,
                payload={"content": truncate_for_discord(content)},
            )
        except DiscordTransientError:
            raise
        except DiscordAPIError as exc:
            # Expired or unknown webhook: nothing left to edit.
            log_event(
                self._logger,
                logging.ERROR,
                "discord.reply.edit_failed",
                interaction_id=handle.interaction_id,
                status_code=exc.status_code,
                exc=exc,
            )

    async def _send_channel_fallback(self, context: ReplyContext, content: str) -> None:
        payload: dict[str, Any] = {"content": truncate_for_discord(content)}
        if context.message_id:
            payload["message_reference"] = {
                "message_id": context.message_id,
                "fail_if_not_exists": False,
            }
        try:
            await self._session.send_channel_message(
                channel_id=context.channel_id, payload=payload
            )
        except DiscordTransientError:
            raise
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.reply.channel_fallback_failed",
                channel_id=context.channel_id,
                correlation_id=context.correlation_id,
                status_code=exc.status_code,
                exc=exc,
            )
            return
        log_event(
            self._logger,
            logging.INFO,
            "discord.reply.channel_fallback",
            topic=context.topic,
            channel_id=context.channel_id,
            correlation_id=context.correlation_id,
        )

    def _apply_config_event(self, topic: str, envelope: Envelope) -> None:
        raw = payload_dict(envelope)
        guild_id = str(raw.get("guild_id") or envelope.metadata.get(META_GUILD_ID, ""))
        if not guild_id:
            raise EnvelopeError(f"{topic} reply carries no guild_id")
        if topic in (topics.GUILD_CONFIG_RETRIEVED, topics.GUILD_CONFIG_UPDATED):
            config_payload = raw.get("config") if isinstance(raw.get("config"), dict) else raw
            config = GuildConfig.from_payload({"guild_id": guild_id, **config_payload})
            self._resolver.on_config_received(guild_id, config)
        elif topic == topics.GUILD_CONFIG_RETRIEVAL_FAILED:
            reason = str(raw.get("reason") or raw.get("error") or "")
            self._resolver.on_config_failed(guild_id, reason)
        elif topic == topics.GUILD_CONFIG_DELETED:
            self._resolver.on_config_deleted(guild_id)
        log_event(
            self._logger,
            logging.INFO,
            "guild_config.event",
            topic=topic,
            guild_id=guild_id,
        )

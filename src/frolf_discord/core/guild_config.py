from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .config import DEFAULT_GUILD_CONFIG_TTL_SECONDS
from .exceptions import FrolfBotError, PermanentError, TransientError
from .logging_utils import log_event
from .time_utils import parse_rfc3339

DEFAULT_INFLIGHT_TIMEOUT_SECONDS = 10.0

RequestConfigFn = Callable[[str], Awaitable[None]]


class GuildConfigError(FrolfBotError):
    """Base error for guild configuration lookups."""


class ConfigLoadingError(GuildConfigError, TransientError):
    """A fetch for this guild is still in flight."""

    def __init__(self, guild_id: str) -> None:
        super().__init__(
            f"guild config for {guild_id} is still loading",
            user_message=(
                "⏳ Server configuration is still loading. "
                "Please try again in a few seconds."
            ),
        )
        self.guild_id = guild_id


class ConfigTemporaryError(GuildConfigError, TransientError):
    """Backend unavailable or timed out."""

    def __init__(self, guild_id: str, reason: str = "") -> None:
        super().__init__(
            f"guild config for {guild_id} temporarily unavailable: {reason or 'unknown'}",
            user_message="❌ Unable to verify your permissions at this time.",
        )
        self.guild_id = guild_id
        self.reason = reason


class ConfigNotFoundError(GuildConfigError, PermanentError):
    """The guild has no configuration at all."""

    def __init__(self, guild_id: str) -> None:
        super().__init__(
            f"guild config for {guild_id} not found",
            user_message=(
                "❌ This server hasn't been set up yet. "
                "An admin must run `/frolf-setup` first."
            ),
        )
        self.guild_id = guild_id


def classify_backend_error(guild_id: str, reason: str) -> GuildConfigError:
    lowered = (reason or "").lower()
    if "not found" in lowered or "no rows" in lowered:
        return ConfigNotFoundError(guild_id)
    if "loading" in lowered or "in flight" in lowered:
        return ConfigLoadingError(guild_id)
    return ConfigTemporaryError(guild_id, reason)


def _str_field(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class GuildConfig:
    guild_id: str
    signup_channel_id: str = ""
    signup_message_id: str = ""
    signup_emoji: str = ""
    event_channel_id: str = ""
    leaderboard_channel_id: str = ""
    registered_role_id: str = ""
    editor_role_id: str = ""
    admin_role_id: str = ""
    setup_complete: bool = False
    updated_at: float = 0.0

    @property
    def is_complete(self) -> bool:
        return (
            self.setup_complete
            and bool(self.registered_role_id)
            and bool(self.editor_role_id)
            and bool(self.admin_role_id)
            and bool(self.signup_channel_id)
        )

    def role_ids(self) -> dict[str, str]:
        """Role name -> role ID for the roles that are configured."""
        roles = {
            "player": self.registered_role_id,
            "editor": self.editor_role_id,
            "admin": self.admin_role_id,
        }
        return {name: role_id for name, role_id in roles.items() if role_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GuildConfig":
        guild_id = _str_field(payload, "guild_id")
        if not guild_id:
            raise ValueError("guild config payload is missing guild_id")
        updated_raw = payload.get("updated_at")
        updated_at = time.time()
        if isinstance(updated_raw, (int, float)) and not isinstance(updated_raw, bool):
            updated_at = float(updated_raw)
        elif isinstance(updated_raw, str) and updated_raw.strip():
            updated_at = parse_rfc3339(updated_raw).timestamp()
        return cls(
            guild_id=guild_id,
            signup_channel_id=_str_field(payload, "signup_channel_id"),
            signup_message_id=_str_field(payload, "signup_message_id"),
            signup_emoji=_str_field(payload, "signup_emoji"),
            event_channel_id=_str_field(payload, "event_channel_id"),
            leaderboard_channel_id=_str_field(payload, "leaderboard_channel_id"),
            registered_role_id=_str_field(payload, "registered_role_id"),
            editor_role_id=_str_field(payload, "editor_role_id"),
            admin_role_id=_str_field(payload, "admin_role_id"),
            setup_complete=bool(payload.get("setup_complete", False)),
            updated_at=updated_at,
        )


@dataclass
class _CacheEntry:
    config: GuildConfig
    cached_at: float


@dataclass
class _Inflight:
    future: "asyncio.Future[GuildConfig]"
    started_at: float


class GuildConfigResolver:
    """Per-guild config cache with single-flight fetches.

    ``request_fn`` asks the backend for a guild's config; the answer arrives later
    through ``on_config_received`` or ``on_config_failed``.
    """

    def __init__(
        self,
        request_fn: RequestConfigFn,
        *,
        logger: logging.Logger,
        ttl_seconds: float = DEFAULT_GUILD_CONFIG_TTL_SECONDS,
        inflight_timeout_seconds: float = DEFAULT_INFLIGHT_TIMEOUT_SECONDS,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._request_fn = request_fn
        self._logger = logger
        self._ttl = ttl_seconds
        self._inflight_timeout = inflight_timeout_seconds
        self._now = now_fn
        self._cache: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, _Inflight] = {}
        self._request_count = 0

    @property
    def request_count(self) -> int:
        return self._request_count

    def cached(self, guild_id: str) -> Optional[GuildConfig]:
        entry = self._cache.get(guild_id)
        return entry.config if entry is not None else None

    def is_setup_complete(self, guild_id: str) -> bool:
        config = self.cached(guild_id)
        return config is not None and config.is_complete

    def is_inflight(self, guild_id: str) -> bool:
        return guild_id in self._inflight

    async def get(
        self, guild_id: str, *, timeout_seconds: Optional[float] = None
    ) -> GuildConfig:
        entry = self._cache.get(guild_id)
        if entry is not None and self._now() - entry.cached_at <= self._ttl:
            return entry.config

        inflight = self._inflight.get(guild_id)
        if inflight is not None and self._now() - inflight.started_at > self._inflight_timeout:
            log_event(
                self._logger,
                logging.WARNING,
                "guild_config.inflight.stale",
                guild_id=guild_id,
            )
            self.clear_inflight(guild_id)
            inflight = None

        if inflight is None:
            loop = asyncio.get_running_loop()
            inflight = _Inflight(future=loop.create_future(), started_at=self._now())
            self._inflight[guild_id] = inflight
            self._request_count += 1
            try:
                await self._request_fn(guild_id)
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "guild_config.request.failed",
                    guild_id=guild_id,
                    exc=exc,
                )
                error = ConfigTemporaryError(guild_id, str(exc))
                self._fail(guild_id, error)
                raise error from exc

        try:
            return await asyncio.wait_for(
                asyncio.shield(inflight.future),
                timeout=(
                    self._inflight_timeout if timeout_seconds is None else timeout_seconds
                ),
            )
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.INFO,
                "guild_config.fetch.timeout",
                guild_id=guild_id,
                timeout_seconds=timeout_seconds,
            )
            if entry is not None:
                # Serve the stale entry while the refresh is pending.
                return entry.config
            raise ConfigLoadingError(guild_id) from None

    def on_config_received(self, guild_id: str, config: GuildConfig) -> None:
        current = self._cache.get(guild_id)
        if current is not None and current.config.updated_at > config.updated_at:
            log_event(
                self._logger,
                logging.DEBUG,
                "guild_config.update.outdated",
                guild_id=guild_id,
            )
            config = current.config
        self._cache[guild_id] = _CacheEntry(config=config, cached_at=self._now())
        inflight = self._inflight.pop(guild_id, None)
        if inflight is not None and not inflight.future.done():
            inflight.future.set_result(config)

    def on_config_failed(self, guild_id: str, reason: str) -> None:
        error = classify_backend_error(guild_id, reason)
        log_event(
            self._logger,
            logging.WARNING,
            "guild_config.fetch.failed",
            guild_id=guild_id,
            reason=reason,
            error_type=type(error).__name__,
        )
        self._fail(guild_id, error)

    def on_config_deleted(self, guild_id: str) -> None:
        self._cache.pop(guild_id, None)
        self._fail(guild_id, ConfigNotFoundError(guild_id))

    def invalidate(self, guild_id: str) -> None:
        self._cache.pop(guild_id, None)

    def clear_inflight(self, guild_id: str) -> None:
        self._fail(guild_id, ConfigTemporaryError(guild_id, "fetch abandoned"))

    def _fail(self, guild_id: str, error: GuildConfigError) -> None:
        inflight = self._inflight.pop(guild_id, None)
        if inflight is None or inflight.future.done():
            return
        inflight.future.set_exception(error)
        # Mark retrieved so an unawaited future does not log "exception never retrieved".
        inflight.future.exception()

    def close(self) -> None:
        for guild_id in list(self._inflight):
            self.clear_inflight(guild_id)
        self._cache.clear()

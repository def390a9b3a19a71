from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from ..integrations.discord.constants import DEFAULT_INTENTS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "frolf-bot.yml"
DEFAULT_BOT_TOKEN_ENV = "FROLF_DISCORD_BOT_TOKEN"
DEFAULT_APP_ID_ENV = "FROLF_DISCORD_APP_ID"
DEFAULT_BUS_URL = "redis://localhost:6379/0"
DEFAULT_STREAM_PREFIX = "frolf:"
DEFAULT_CONSUMER_GROUP = "discord-frolf-bot"
DEFAULT_CONSUMER_NAME = "discord-1"
DEFAULT_PUBLISH_DRAIN_SECONDS = 5.0
DEFAULT_DEDUP_WINDOW_SECONDS = 120

# Discord interaction tokens stay valid for follow-ups for 15 minutes.
MAX_CORRELATION_TTL_SECONDS = 15 * 60
DEFAULT_CORRELATION_TTL_SECONDS = 10 * 60
DEFAULT_PENDING_UPLOAD_TTL_SECONDS = 5 * 60
DEFAULT_GUILD_CONFIG_TTL_SECONDS = 60.0
DEFAULT_GUILD_CONFIG_LOOKUP_TIMEOUT_SECONDS = 0.8
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

DEFAULT_UPLOAD_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_UPLOAD_INLINE_THRESHOLD_BYTES = 256 * 1024
DEFAULT_UPLOAD_DOWNLOAD_TIMEOUT_SECONDS = 30.0
DEFAULT_UPLOAD_RATE_LIMIT_PER_MINUTE = 5

DEFAULT_SUPPRESSED_REASONS = ("score record not found",)

DEFAULT_LOG_PATH = "logs/frolf-discord.log"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 3


class BotConfigError(Exception):
    """Raised when bot config is invalid."""


@dataclass(frozen=True)
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclass(frozen=True)
class DiscordSettings:
    bot_token_env: str
    app_id_env: str
    bot_token: Optional[str]
    application_id: Optional[str]
    guild_id: Optional[str]
    intents: int
    sync_commands_on_startup: bool = True


@dataclass(frozen=True)
class BusSettings:
    url: str = DEFAULT_BUS_URL
    stream_prefix: str = DEFAULT_STREAM_PREFIX
    consumer_group: str = DEFAULT_CONSUMER_GROUP
    consumer_name: str = DEFAULT_CONSUMER_NAME
    publish_drain_seconds: float = DEFAULT_PUBLISH_DRAIN_SECONDS
    dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS


@dataclass(frozen=True)
class TimingSettings:
    correlation_ttl_seconds: float = DEFAULT_CORRELATION_TTL_SECONDS
    pending_upload_ttl_seconds: float = DEFAULT_PENDING_UPLOAD_TTL_SECONDS
    guild_config_ttl_seconds: float = DEFAULT_GUILD_CONFIG_TTL_SECONDS
    guild_config_lookup_timeout_seconds: float = (
        DEFAULT_GUILD_CONFIG_LOOKUP_TIMEOUT_SECONDS
    )
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS


@dataclass(frozen=True)
class UploadSettings:
    max_bytes: int = DEFAULT_UPLOAD_MAX_BYTES
    inline_threshold_bytes: int = DEFAULT_UPLOAD_INLINE_THRESHOLD_BYTES
    download_timeout_seconds: float = DEFAULT_UPLOAD_DOWNLOAD_TIMEOUT_SECONDS
    rate_limit_per_minute: int = DEFAULT_UPLOAD_RATE_LIMIT_PER_MINUTE


@dataclass(frozen=True)
class BotConfig:
    root: Path
    discord: DiscordSettings
    bus: BusSettings = field(default_factory=BusSettings)
    timings: TimingSettings = field(default_factory=TimingSettings)
    uploads: UploadSettings = field(default_factory=UploadSettings)
    pwa_base_url: str = ""
    suppressed_reasons: tuple[str, ...] = DEFAULT_SUPPRESSED_REASONS
    log: Optional[LogConfig] = None

    @classmethod
    def from_raw(cls, *, root: Path, raw: dict[str, Any]) -> "BotConfig":
        cfg: dict[str, Any] = raw if isinstance(raw, dict) else {}

        discord_cfg = _section(cfg, "discord")
        bot_token_env = str(
            discord_cfg.get("bot_token_env", DEFAULT_BOT_TOKEN_ENV)
        ).strip()
        app_id_env = str(discord_cfg.get("app_id_env", DEFAULT_APP_ID_ENV)).strip()
        if not bot_token_env:
            raise BotConfigError("discord.bot_token_env must be non-empty")
        if not app_id_env:
            raise BotConfigError("discord.app_id_env must be non-empty")

        intents_value = discord_cfg.get("intents", DEFAULT_INTENTS)
        if not isinstance(intents_value, int) or isinstance(intents_value, bool):
            raise BotConfigError("discord.intents must be an integer")
        if intents_value < 0:
            raise BotConfigError("discord.intents must be >= 0")

        guild_ids = _parse_string_ids(discord_cfg.get("guild_id"))
        discord = DiscordSettings(
            bot_token_env=bot_token_env,
            app_id_env=app_id_env,
            bot_token=os.environ.get(bot_token_env),
            application_id=os.environ.get(app_id_env),
            guild_id=guild_ids[0] if guild_ids else None,
            intents=intents_value,
            sync_commands_on_startup=_parse_bool_or_default(
                discord_cfg.get("sync_commands_on_startup"),
                default=True,
                key="discord.sync_commands_on_startup",
            ),
        )

        bus_cfg = _section(cfg, "bus")
        bus_url = str(bus_cfg.get("url") or DEFAULT_BUS_URL).strip()
        if not bus_url:
            raise BotConfigError("bus.url must be non-empty")
        bus = BusSettings(
            url=bus_url,
            stream_prefix=str(bus_cfg.get("stream_prefix", DEFAULT_STREAM_PREFIX)),
            consumer_group=str(
                bus_cfg.get("consumer_group") or DEFAULT_CONSUMER_GROUP
            ).strip(),
            consumer_name=str(
                bus_cfg.get("consumer_name") or DEFAULT_CONSUMER_NAME
            ).strip(),
            publish_drain_seconds=_parse_positive_float_or_default(
                bus_cfg.get("publish_drain_seconds"),
                default=DEFAULT_PUBLISH_DRAIN_SECONDS,
                key="bus.publish_drain_seconds",
            ),
            dedup_window_seconds=int(
                _parse_positive_float_or_default(
                    bus_cfg.get("dedup_window_seconds"),
                    default=DEFAULT_DEDUP_WINDOW_SECONDS,
                    key="bus.dedup_window_seconds",
                )
            ),
        )

        timings_cfg = _section(cfg, "timings")
        correlation_ttl = _parse_positive_float_or_default(
            timings_cfg.get("correlation_ttl_seconds"),
            default=DEFAULT_CORRELATION_TTL_SECONDS,
            key="timings.correlation_ttl_seconds",
        )
        if correlation_ttl > MAX_CORRELATION_TTL_SECONDS:
            logger.warning(
                "timings.correlation_ttl_seconds=%s exceeds Discord token lifetime; clamping to %s",
                correlation_ttl,
                MAX_CORRELATION_TTL_SECONDS,
            )
            correlation_ttl = float(MAX_CORRELATION_TTL_SECONDS)
        timings = TimingSettings(
            correlation_ttl_seconds=correlation_ttl,
            pending_upload_ttl_seconds=_parse_positive_float_or_default(
                timings_cfg.get("pending_upload_ttl_seconds"),
                default=DEFAULT_PENDING_UPLOAD_TTL_SECONDS,
                key="timings.pending_upload_ttl_seconds",
            ),
            guild_config_ttl_seconds=_parse_positive_float_or_default(
                timings_cfg.get("guild_config_ttl_seconds"),
                default=DEFAULT_GUILD_CONFIG_TTL_SECONDS,
                key="timings.guild_config_ttl_seconds",
            ),
            guild_config_lookup_timeout_seconds=_parse_positive_float_or_default(
                timings_cfg.get("guild_config_lookup_timeout_seconds"),
                default=DEFAULT_GUILD_CONFIG_LOOKUP_TIMEOUT_SECONDS,
                key="timings.guild_config_lookup_timeout_seconds",
            ),
            sweep_interval_seconds=_parse_positive_float_or_default(
                timings_cfg.get("sweep_interval_seconds"),
                default=DEFAULT_SWEEP_INTERVAL_SECONDS,
                key="timings.sweep_interval_seconds",
            ),
        )

        uploads_cfg = _section(cfg, "uploads")
        uploads = UploadSettings(
            max_bytes=int(
                _parse_positive_float_or_default(
                    uploads_cfg.get("max_bytes"),
                    default=DEFAULT_UPLOAD_MAX_BYTES,
                    key="uploads.max_bytes",
                )
            ),
            inline_threshold_bytes=int(
                _parse_positive_float_or_default(
                    uploads_cfg.get("inline_threshold_bytes"),
                    default=DEFAULT_UPLOAD_INLINE_THRESHOLD_BYTES,
                    key="uploads.inline_threshold_bytes",
                )
            ),
            download_timeout_seconds=_parse_positive_float_or_default(
                uploads_cfg.get("download_timeout_seconds"),
                default=DEFAULT_UPLOAD_DOWNLOAD_TIMEOUT_SECONDS,
                key="uploads.download_timeout_seconds",
            ),
            rate_limit_per_minute=int(
                _parse_positive_float_or_default(
                    uploads_cfg.get("rate_limit_per_minute"),
                    default=DEFAULT_UPLOAD_RATE_LIMIT_PER_MINUTE,
                    key="uploads.rate_limit_per_minute",
                )
            ),
        )

        replies_cfg = _section(cfg, "replies")
        suppressed_raw = replies_cfg.get("suppressed_reasons")
        suppressed_reasons = (
            tuple(token.lower() for token in _parse_string_ids(suppressed_raw))
            if suppressed_raw is not None
            else DEFAULT_SUPPRESSED_REASONS
        )

        pwa_cfg = _section(cfg, "pwa")
        pwa_base_url = str(pwa_cfg.get("base_url") or "").strip().rstrip("/")

        log_cfg = _section(cfg, "log")
        log_path_value = log_cfg.get("path", DEFAULT_LOG_PATH)
        if not isinstance(log_path_value, str) or not log_path_value.strip():
            raise BotConfigError("log.path must be a string path")
        log = LogConfig(
            path=(root / log_path_value).resolve(),
            max_bytes=int(
                _parse_positive_float_or_default(
                    log_cfg.get("max_bytes"),
                    default=DEFAULT_LOG_MAX_BYTES,
                    key="log.max_bytes",
                )
            ),
            backup_count=int(
                _parse_positive_float_or_default(
                    log_cfg.get("backup_count"),
                    default=DEFAULT_LOG_BACKUP_COUNT,
                    key="log.backup_count",
                )
            ),
        )

        return cls(
            root=root,
            discord=discord,
            bus=bus,
            timings=timings,
            uploads=uploads,
            pwa_base_url=pwa_base_url,
            suppressed_reasons=suppressed_reasons,
            log=log,
        )

    def require_credentials(self) -> tuple[str, str]:
        if not self.discord.bot_token:
            raise BotConfigError(
                f"missing bot token env '{self.discord.bot_token_env}'"
            )
        if not self.discord.application_id:
            raise BotConfigError(
                f"missing application id env '{self.discord.app_id_env}'"
            )
        return self.discord.bot_token, self.discord.application_id


def load_config(path: Optional[Path] = None) -> BotConfig:
    """Load ``frolf-bot.yml`` (or ``path``) plus a sibling ``.env``."""
    config_path = (path or Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()
    if config_path.is_dir():
        config_path = config_path / DEFAULT_CONFIG_FILENAME
    root = config_path.parent
    load_dotenv_for_root(root)
    return BotConfig.from_raw(root=root, raw=_load_yaml_dict(config_path))


def load_dotenv_for_root(root: Path) -> None:
    candidate = root / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise BotConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise BotConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise BotConfigError(f"Config file must be a mapping: {path}")
    return data


def _section(cfg: dict[str, Any], key: str) -> dict[str, Any]:
    value = cfg.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise BotConfigError(f"{key} must be a mapping")
    return value


def _parse_string_ids(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    parsed: list[str] = []
    for item in items:
        token = str(item).strip()
        if token:
            parsed.append(token)
    return parsed


def _parse_positive_float_or_default(value: Any, *, default: float, key: str) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise BotConfigError(f"{key} must be a number")
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise BotConfigError(f"{key} must be a number") from exc
    if parsed <= 0:
        return float(default)
    return parsed


def _parse_bool_or_default(value: Any, *, default: bool, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise BotConfigError(f"{key} must be a boolean")

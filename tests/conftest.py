"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `frolf_discord` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 120


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """
    Apply a default per-test timeout to non-integration tests.

    This relies on `pytest-timeout` when installed; if it isn't installed, the
    marker is inert but still documents the intent.
    """
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def logger() -> logging.Logger:
    return logging.getLogger("frolf_discord.tests")


@pytest.fixture()
def bot_config(tmp_path: Path):
    # Imported lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `frolf_discord` modules are loaded.
    from frolf_discord.core.config import BotConfig

    return BotConfig.from_raw(
        root=tmp_path, raw={"pwa": {"base_url": "https://app.frolf.test/"}}
    )


@pytest.fixture()
def session():
    from frolf_discord.integrations.discord.fake_session import FakeDiscordSession

    return FakeDiscordSession()


@pytest.fixture()
def bus():
    from frolf_discord.bus.memory import InMemoryBus

    return InMemoryBus()


@pytest.fixture()
def store(logger: logging.Logger):
    from frolf_discord.core.correlation_store import CorrelationStore

    return CorrelationStore(logger=logger)


@pytest.fixture()
def config_requests() -> list[str]:
    return []


@pytest.fixture()
def resolver(logger: logging.Logger, config_requests: list[str]):
    from frolf_discord.core.guild_config import GuildConfigResolver

    async def request(guild_id: str) -> None:
        config_requests.append(guild_id)

    return GuildConfigResolver(request, logger=logger, inflight_timeout_seconds=1.0)


@pytest.fixture()
def guild_config():
    from frolf_discord.core.guild_config import GuildConfig

    return GuildConfig(
        guild_id="G1",
        signup_channel_id="C-signup",
        signup_message_id="M-signup",
        signup_emoji="🥏",
        event_channel_id="C-events",
        leaderboard_channel_id="C-leaderboard",
        registered_role_id="R-player",
        editor_role_id="R-editor",
        admin_role_id="R-admin",
        setup_complete=True,
        updated_at=100.0,
    )


@pytest.fixture()
def configured_guild(resolver, guild_config):
    """Seed the resolver cache so gate checks resolve without a bus round-trip."""
    resolver.on_config_received(guild_config.guild_id, guild_config)
    return guild_config


@pytest.fixture()
def deps(session, bus, store, resolver, bot_config, logger):
    from frolf_discord.managers.base import ManagerDeps

    return ManagerDeps(
        session=session,
        bus=bus,
        store=store,
        resolver=resolver,
        config=bot_config,
        logger=logger,
    )


@pytest.fixture()
def registry(session, resolver, logger):
    from frolf_discord.integrations.discord.registry import InteractionRegistry

    return InteractionRegistry(
        session=session,
        resolver=resolver,
        logger=logger,
        config_lookup_timeout_seconds=0.05,
    )


@pytest.fixture()
def router(bus, store, session, resolver, logger):
    from frolf_discord.integrations.discord.reply_router import ReplyRouter

    return ReplyRouter(
        bus=bus,
        store=store,
        session=session,
        resolver=resolver,
        logger=logger,
        consumer_group="discord-tests",
        suppressed_reasons=("score record not found",),
    )


@pytest.fixture()
def make_interaction() -> Callable[..., dict[str, Any]]:
    """Build a raw INTERACTION_CREATE payload.

    ``type_`` is 2 (slash command), 3 (component) or 5 (modal submit). A falsy
    ``guild_id`` produces a DM interaction. ``omit_roles`` drops the member's
    role list so the registry has to look it up.
    """

    def build(
        type_: int,
        *,
        name: Optional[str] = None,
        custom_id: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
        values: Optional[dict[str, str]] = None,
        guild_id: Optional[str] = "G1",
        user_id: str = "U1",
        roles: Optional[list[str]] = None,
        omit_roles: bool = False,
        permissions: str = "0",
        channel_id: str = "CH1",
        message_id: Optional[str] = None,
        interaction_id: str = "I1",
        token: str = "T1",
    ) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if name is not None:
            data["name"] = name
        if options:
            data["options"] = [
                {"name": key, "value": value} for key, value in options.items()
            ]
        if custom_id is not None:
            data["custom_id"] = custom_id
        if values is not None:
            data["components"] = [
                {
                    "type": 1,
                    "components": [{"type": 4, "custom_id": key, "value": value}],
                }
                for key, value in values.items()
            ]
        payload: dict[str, Any] = {
            "id": interaction_id,
            "token": token,
            "type": type_,
            "channel_id": channel_id,
            "data": data,
        }
        if guild_id:
            member: dict[str, Any] = {"user": {"id": user_id}, "permissions": permissions}
            if not omit_roles:
                member["roles"] = list(roles or [])
            payload["guild_id"] = guild_id
            payload["member"] = member
        else:
            payload["user"] = {"id": user_id}
        if message_id is not None:
            payload["message"] = {"id": message_id}
        return payload

    return build


@pytest.fixture()
def anyio_backend() -> str:
    # The code under test is built on asyncio; don't run under other backends
    # (e.g. trio) that happen to be installed in the environment.
    return "asyncio"

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ...core.logging_utils import log_event
from .errors import DiscordError
from .session import DiscordSession


async def sync_guild_commands(
    session: DiscordSession,
    *,
    guild_id: str,
    commands: list[dict[str, Any]],
    logger: logging.Logger,
) -> list[str]:
    """Create whichever desired slash commands ``guild_id`` is missing.

    Existing commands are matched by name and left alone, so a second run
    against an unchanged guild creates nothing. One failed create does not stop
    the rest. Returns the names that were created.
    """
    existing_names: set[str] = set()
    try:
        existing = await session.list_guild_commands(guild_id=guild_id)
    except asyncio.CancelledError:
        raise
    except DiscordError as exc:
        log_event(
            logger,
            logging.WARNING,
            "discord.commands.sync.list_failed",
            guild_id=guild_id,
            exc=exc,
        )
    else:
        for command in existing:
            name = command.get("name") if isinstance(command, dict) else None
            if isinstance(name, str) and name.strip():
                existing_names.add(name.strip())

    created: list[str] = []
    for command in commands:
        name = str(command.get("name") or "").strip()
        if not name or name in existing_names:
            continue
        try:
            await session.create_guild_command(guild_id=guild_id, command=command)
        except asyncio.CancelledError:
            raise
        except DiscordError as exc:
            log_event(
                logger,
                logging.ERROR,
                "discord.commands.sync.create_failed",
                guild_id=guild_id,
                command=name,
                exc=exc,
            )
            continue
        existing_names.add(name)
        created.append(name)

    log_event(
        logger,
        logging.INFO,
        "discord.commands.sync.done",
        guild_id=guild_id,
        desired_count=len(commands),
        created=created,
    )
    return created


async def unregister_guild_commands(
    session: DiscordSession,
    *,
    guild_id: str,
    keep: frozenset[str] = frozenset(),
    logger: logging.Logger,
) -> list[str]:
    """Delete every slash command ``guild_id`` carries except the names in ``keep``.

    A failed list deletes nothing; a failed delete is logged and the rest still
    run. Returns the names that were deleted.
    """
    try:
        existing = await session.list_guild_commands(guild_id=guild_id)
    except asyncio.CancelledError:
        raise
    except DiscordError as exc:
        log_event(
            logger,
            logging.WARNING,
            "discord.commands.unregister.list_failed",
            guild_id=guild_id,
            exc=exc,
        )
        return []

    deleted: list[str] = []
    for command in existing:
        if not isinstance(command, dict):
            continue
        name = str(command.get("name") or "").strip()
        command_id = str(command.get("id") or "")
        if not command_id or name in keep:
            continue
        try:
            await session.delete_guild_command(guild_id=guild_id, command_id=command_id)
        except asyncio.CancelledError:
            raise
        except DiscordError as exc:
            log_event(
                logger,
                logging.ERROR,
                "discord.commands.unregister.delete_failed",
                guild_id=guild_id,
                command=name,
                exc=exc,
            )
            continue
        deleted.append(name)

    log_event(
        logger,
        logging.INFO,
        "discord.commands.unregister.done",
        guild_id=guild_id,
        deleted=deleted,
    )
    return deleted

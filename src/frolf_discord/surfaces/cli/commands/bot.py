from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import typer

from ....core.config import BotConfigError, load_config
from ....core.logging_utils import setup_rotating_logger
from ....integrations.discord.service import (
    create_bot_service,
    register_guild_commands,
)

LOGGER_NAME = "frolf-discord"


def register_bot_commands(app: typer.Typer, *, raise_exit: Callable) -> None:
    @app.command("start")
    def start(
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to frolf-bot.yml or its directory"
        ),
        dry_run: bool = typer.Option(
            False,
            "--dry-run",
            help="Use an in-process bus instead of Redis; nothing reaches the backend.",
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    ) -> None:
        """Connect to the Discord gateway and serve interactions until stopped."""
        try:
            config = load_config(config_path)
            logger = setup_rotating_logger(
                LOGGER_NAME,
                config.log,
                level=logging.DEBUG if verbose else logging.INFO,
            )
            service = create_bot_service(config, logger=logger, dry_run=dry_run)
            asyncio.run(service.run_forever())
        except BotConfigError as exc:
            raise_exit(str(exc), cause=exc)
        except KeyboardInterrupt:
            typer.echo("Frolf bot stopped.")

    @app.command("register-commands")
    def register_commands(
        guild_id: str = typer.Option(..., "--guild-id", help="Target guild ID"),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to frolf-bot.yml or its directory"
        ),
    ) -> None:
        """Create any missing slash commands in one guild, then exit."""
        try:
            config = load_config(config_path)
            created = asyncio.run(
                register_guild_commands(
                    config,
                    guild_id=guild_id.strip(),
                    logger=logging.getLogger(f"{LOGGER_NAME}.commands"),
                )
            )
        except BotConfigError as exc:
            raise_exit(str(exc), cause=exc)

        if created:
            typer.echo(f"Created commands: {', '.join(created)}")
        else:
            typer.echo("Guild commands already up to date.")

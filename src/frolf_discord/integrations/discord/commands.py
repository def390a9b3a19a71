from __future__ import annotations

from typing import Any

from .constants import DISCORD_PERMISSION_ADMINISTRATOR

# Discord application command option types.
STRING = 3
INTEGER = 4
USER = 6

CHAT_INPUT = 1

SETUP_COMMAND_NAME = "frolf-setup"


def build_application_commands() -> list[dict[str, Any]]:
    """Slash commands every set-up guild should carry."""
    admin_only = str(DISCORD_PERMISSION_ADMINISTRATOR)
    return [
        {
            "type": CHAT_INPUT,
            "name": "updaterole",
            "description": "Request a role change for a member",
            "options": [
                {
                    "type": USER,
                    "name": "user",
                    "description": "The member whose role should change",
                    "required": True,
                }
            ],
        },
        {
            "type": CHAT_INPUT,
            "name": "createround",
            "description": "Create a new round",
        },
        {
            "type": CHAT_INPUT,
            "name": "claimtag",
            "description": "Claim a leaderboard tag number",
            "options": [
                {
                    "type": INTEGER,
                    "name": "tag",
                    "description": "Tag number to claim (1-100)",
                    "required": True,
                    "min_value": 1,
                    "max_value": 100,
                }
            ],
        },
        {
            "type": CHAT_INPUT,
            "name": "set-udisc-name",
            "description": "Set your UDisc username and display name for score matching",
            "options": [
                {
                    "type": STRING,
                    "name": "username",
                    "description": "Your UDisc username",
                    "required": False,
                    "max_length": 100,
                },
                {
                    "type": STRING,
                    "name": "name",
                    "description": "Your name as it appears on UDisc scorecards",
                    "required": False,
                    "max_length": 100,
                },
            ],
        },
        {
            "type": CHAT_INPUT,
            "name": "invite",
            "description": "Get a link to manage your club's invites",
        },
        {
            "type": CHAT_INPUT,
            "name": SETUP_COMMAND_NAME,
            "description": "Set up Frolf Bot for this server",
            "default_member_permissions": admin_only,
        },
        {
            "type": CHAT_INPUT,
            "name": "frolf-reset",
            "description": "Reset this server's Frolf Bot configuration",
            "default_member_permissions": admin_only,
        },
    ]


def build_setup_commands() -> list[dict[str, Any]]:
    """What a guild without a finished setup gets: only ``/frolf-setup``."""
    return [
        command
        for command in build_application_commands()
        if command["name"] == SETUP_COMMAND_NAME
    ]

from __future__ import annotations

from enum import IntEnum
from typing import Iterable, Optional

from ...core.guild_config import GuildConfig
from .constants import DISCORD_PERMISSION_ADMINISTRATOR


class PermissionLevel(IntEnum):
    NONE = 0
    PLAYER = 1
    EDITOR = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


def has_admin_bit(permissions: int) -> bool:
    return bool(permissions & DISCORD_PERMISSION_ADMINISTRATOR)


def member_level(
    role_ids: Iterable[str],
    config: Optional[GuildConfig],
    *,
    permissions: int = 0,
) -> PermissionLevel:
    """Highest level the member holds; roles missing from the config grant nothing."""
    if has_admin_bit(permissions):
        return PermissionLevel.ADMIN
    if config is None:
        return PermissionLevel.NONE
    held = set(role_ids)
    if config.admin_role_id and config.admin_role_id in held:
        return PermissionLevel.ADMIN
    if config.editor_role_id and config.editor_role_id in held:
        return PermissionLevel.EDITOR
    if config.registered_role_id and config.registered_role_id in held:
        return PermissionLevel.PLAYER
    return PermissionLevel.NONE


def is_allowed(
    required: PermissionLevel,
    role_ids: Iterable[str],
    config: Optional[GuildConfig],
    *,
    permissions: int = 0,
) -> bool:
    if required is PermissionLevel.NONE:
        return True
    return member_level(role_ids, config, permissions=permissions) >= required


def denial_message(required: PermissionLevel) -> str:
    return f"❌ You need the **{required.label}** role or higher to use this."

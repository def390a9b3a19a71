from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .constants import (
    INTERACTION_TYPE_APPLICATION_COMMAND,
    INTERACTION_TYPE_MESSAGE_COMPONENT,
    INTERACTION_TYPE_MODAL_SUBMIT,
)


class InteractionKind(str, Enum):
    SLASH_COMMAND = "slash_command"
    MESSAGE_COMPONENT = "message_component"
    MODAL_SUBMIT = "modal_submit"
    REACTION = "reaction"


_KIND_BY_TYPE = {
    INTERACTION_TYPE_APPLICATION_COMMAND: InteractionKind.SLASH_COMMAND,
    INTERACTION_TYPE_MESSAGE_COMPONENT: InteractionKind.MESSAGE_COMPONENT,
    INTERACTION_TYPE_MODAL_SUBMIT: InteractionKind.MODAL_SUBMIT,
}


@dataclass(frozen=True)
class InteractionHandle:
    """Everything needed to answer one in-flight interaction later."""

    interaction_id: str
    token: str
    kind: InteractionKind
    guild_id: str = ""
    user_id: str = ""
    channel_id: str = ""
    message_id: Optional[str] = None


def _as_id(value: object) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def extract_interaction_kind(
    interaction_payload: dict[str, Any],
) -> Optional[InteractionKind]:
    interaction_type = interaction_payload.get("type")
    if not isinstance(interaction_type, int):
        return None
    return _KIND_BY_TYPE.get(interaction_type)


def extract_command_name(interaction_payload: dict[str, Any]) -> Optional[str]:
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return None
    return _as_id(data.get("name"))


def extract_command_options(interaction_payload: dict[str, Any]) -> dict[str, Any]:
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return {}
    options = data.get("options")
    parsed: dict[str, Any] = {}
    if not isinstance(options, list):
        return parsed
    for item in options:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name:
            continue
        parsed[name] = item.get("value")
    return parsed


def extract_interaction_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("id"))


def extract_interaction_token(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("token"))


def extract_channel_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("channel_id"))


def extract_guild_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    return _as_id(interaction_payload.get("guild_id"))


def extract_message_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    message = interaction_payload.get("message")
    if not isinstance(message, dict):
        return None
    return _as_id(message.get("id"))


def extract_user_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    member = interaction_payload.get("member")
    if isinstance(member, dict):
        member_user = member.get("user")
        if isinstance(member_user, dict):
            user_id = _as_id(member_user.get("id"))
            if user_id:
                return user_id
    user = interaction_payload.get("user")
    if isinstance(user, dict):
        return _as_id(user.get("id"))
    return None


def extract_member_role_ids(interaction_payload: dict[str, Any]) -> Optional[list[str]]:
    """Role IDs on the invoking member, or None when the payload carries no roles."""
    member = interaction_payload.get("member")
    if not isinstance(member, dict):
        return None
    roles = member.get("roles")
    if not isinstance(roles, list):
        return None
    return [token for token in (_as_id(role) for role in roles) if token]


def extract_member_permissions(interaction_payload: dict[str, Any]) -> int:
    member = interaction_payload.get("member")
    # ``app_permissions`` is the bot's own permission set, never the member's.
    raw = member.get("permissions") if isinstance(member, dict) else None
    try:
        return int(str(raw))
    except (TypeError, ValueError):
        return 0


def is_component_interaction(interaction_payload: dict[str, Any]) -> bool:
    return interaction_payload.get("type") == INTERACTION_TYPE_MESSAGE_COMPONENT


def extract_component_custom_id(interaction_payload: dict[str, Any]) -> Optional[str]:
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return None
    return _as_id(data.get("custom_id"))


def extract_component_values(interaction_payload: dict[str, Any]) -> list[str]:
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return []
    values = data.get("values")
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if isinstance(v, (str, int, float))]


def extract_modal_values(interaction_payload: dict[str, Any]) -> dict[str, str]:
    """Flatten modal text inputs (nested in action rows) into ``custom_id -> value``."""
    data = interaction_payload.get("data")
    if not isinstance(data, dict):
        return {}
    values: dict[str, str] = {}
    rows = data.get("components")
    if not isinstance(rows, list):
        return values
    for row in rows:
        if not isinstance(row, dict):
            continue
        children = row.get("components")
        if not isinstance(children, list):
            continue
        for child in children:
            if not isinstance(child, dict):
                continue
            custom_id = _as_id(child.get("custom_id"))
            value = child.get("value")
            if custom_id and isinstance(value, str):
                values[custom_id] = value
    return values


def extract_dispatch_key(interaction_payload: dict[str, Any]) -> Optional[str]:
    """Command name for slash commands, custom-id for components and modals."""
    kind = extract_interaction_kind(interaction_payload)
    if kind is InteractionKind.SLASH_COMMAND:
        return extract_command_name(interaction_payload)
    if kind in (InteractionKind.MESSAGE_COMPONENT, InteractionKind.MODAL_SUBMIT):
        return extract_component_custom_id(interaction_payload)
    return None


def build_interaction_handle(
    interaction_payload: dict[str, Any],
) -> Optional[InteractionHandle]:
    interaction_id = extract_interaction_id(interaction_payload)
    token = extract_interaction_token(interaction_payload)
    kind = extract_interaction_kind(interaction_payload)
    if not interaction_id or not token or kind is None:
        return None
    return InteractionHandle(
        interaction_id=interaction_id,
        token=token,
        kind=kind,
        guild_id=extract_guild_id(interaction_payload) or "",
        user_id=extract_user_id(interaction_payload) or "",
        channel_id=extract_channel_id(interaction_payload) or "",
        message_id=extract_message_id(interaction_payload),
    )


def parse_custom_id(custom_id: str) -> tuple[str, list[str], dict[str, str]]:
    """Split ``prefix|seg|key=value`` into prefix, positional segments and pairs."""
    prefix, *segments = custom_id.split("|")
    positional: list[str] = []
    pairs: dict[str, str] = {}
    for segment in segments:
        if "=" in segment:
            key, _, value = segment.partition("=")
            if key:
                pairs[key] = value
        elif segment:
            positional.append(segment)
    return prefix, positional, pairs

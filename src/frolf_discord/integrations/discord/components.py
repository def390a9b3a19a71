from __future__ import annotations

from typing import Any, Optional

DISCORD_BUTTON_STYLE_PRIMARY = 1
DISCORD_BUTTON_STYLE_SECONDARY = 2
DISCORD_BUTTON_STYLE_SUCCESS = 3
DISCORD_BUTTON_STYLE_DANGER = 4
DISCORD_BUTTON_STYLE_LINK = 5

DISCORD_TEXT_INPUT_SHORT = 1
DISCORD_TEXT_INPUT_PARAGRAPH = 2


def build_action_row(components: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "type": 1,
        "components": components,
    }


def build_button(
    label: str,
    custom_id: str,
    *,
    style: int = DISCORD_BUTTON_STYLE_SECONDARY,
    emoji: Optional[str] = None,
    disabled: bool = False,
) -> dict[str, Any]:
    button: dict[str, Any] = {
        "type": 2,
        "style": style,
        "label": label,
        "custom_id": custom_id,
        "disabled": disabled,
    }
    if emoji:
        button["emoji"] = {"name": emoji}
    return button


def build_text_input(
    custom_id: str,
    label: str,
    *,
    style: int = DISCORD_TEXT_INPUT_SHORT,
    placeholder: Optional[str] = None,
    required: bool = True,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> dict[str, Any]:
    text_input: dict[str, Any] = {
        "type": 4,
        "custom_id": custom_id,
        "label": label[:45],
        "style": style,
        "required": required,
    }
    if placeholder:
        text_input["placeholder"] = placeholder[:100]
    if min_length is not None:
        text_input["min_length"] = min_length
    if max_length is not None:
        text_input["max_length"] = max_length
    return text_input


def build_modal(
    custom_id: str, title: str, inputs: list[dict[str, Any]]
) -> dict[str, Any]:
    """Modal response data: one text input per action row, at most five."""
    return {
        "custom_id": custom_id,
        "title": title[:45],
        "components": [build_action_row([item]) for item in inputs[:5]],
    }

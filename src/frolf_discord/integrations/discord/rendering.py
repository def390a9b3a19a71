from __future__ import annotations

import re
from typing import Final

from .constants import DISCORD_MAX_MESSAGE_LENGTH

_TRUNCATION_SUFFIX: Final[str] = "…"
_DISCORD_ESCAPE_RE = re.compile(r"([*_~`>|\\])")


def escape_discord_markdown(text: str) -> str:
    if not text:
        return ""
    return _DISCORD_ESCAPE_RE.sub(r"\\\1", text)


def format_bold(text: str) -> str:
    return f"**{escape_discord_markdown(text)}**" if text else ""


def mention_user(user_id: str) -> str:
    return f"<@{user_id}>"


def truncate_for_discord(text: str, max_len: int = DISCORD_MAX_MESSAGE_LENGTH) -> str:
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max(max_len - len(_TRUNCATION_SUFFIX), 0)] + _TRUNCATION_SUFFIX

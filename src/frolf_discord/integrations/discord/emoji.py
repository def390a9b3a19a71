from __future__ import annotations

import unicodedata

_VARIATION_SELECTORS = frozenset({"\ufe0e", "\ufe0f"})


def _is_mark(char: str) -> bool:
    return unicodedata.category(char).startswith("M")


def normalize_emoji(value: str) -> str:
    """Strip variation selectors and combining marks."""
    return "".join(
        char for char in value if char not in _VARIATION_SELECTORS and not _is_mark(char)
    )


def emoji_matches(received: str, configured: str) -> bool:
    if not received or not configured:
        return False
    if received == configured:
        return True
    return normalize_emoji(received) == normalize_emoji(configured)

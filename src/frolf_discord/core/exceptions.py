from __future__ import annotations

from typing import Optional


class FrolfBotError(Exception):
    """Base error for the bot."""

    recoverable = False
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(FrolfBotError):
    """Failure that is expected to clear on retry."""

    recoverable = True
    severity = "warning"


class PermanentError(FrolfBotError):
    """Failure that retrying will not fix."""

    recoverable = False
    severity = "error"


__all__ = ["FrolfBotError", "PermanentError", "TransientError"]

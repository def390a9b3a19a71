from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .logging_utils import log_event


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler invocation.

    ``failure`` is a domain outcome already shown to the user; ``error`` is a
    transport or programming fault.
    """

    success: Any = None
    failure: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.error is None

    @classmethod
    def failed(cls, reason: str) -> "HandlerResult":
        return cls(failure=reason)


async def run_operation(
    name: str,
    fn: Callable[[], Awaitable[Any]],
    logger: logging.Logger,
    **fields: Any,
) -> HandlerResult:
    started = time.monotonic()
    try:
        value = await fn()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log_event(
            logger,
            logging.ERROR,
            "handler.error",
            operation=name,
            duration_ms=int((time.monotonic() - started) * 1000),
            exc=exc,
            **fields,
        )
        return HandlerResult(error=exc)
    result = value if isinstance(value, HandlerResult) else HandlerResult(success=value)
    log_event(
        logger,
        logging.WARNING if result.error is not None else logging.INFO,
        "handler.done",
        operation=name,
        duration_ms=int((time.monotonic() - started) * 1000),
        outcome=(
            "error"
            if result.error is not None
            else "failure" if result.failure is not None else "success"
        ),
        failure=result.failure,
        exc=result.error,
        **fields,
    )
    return result

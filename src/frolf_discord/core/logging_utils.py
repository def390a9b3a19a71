from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .config import LogConfig

_CONFIGURED_LOGGERS: set[str] = set()
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _coerce(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _coerce(item) for key, item in value.items()}
    if isinstance(value, Path):
        return str(value)
    return str(value)


def format_event(event_name: str, **fields: Any) -> str:
    payload: dict[str, Any] = {"event": event_name}
    exc = fields.pop("exc", None)
    for key, value in fields.items():
        payload[key] = _coerce(value)
    if isinstance(exc, BaseException):
        payload["error"] = str(exc)
        payload["error_type"] = type(exc).__name__
    elif exc is not None:
        payload["error"] = str(exc)
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def log_event(
    logger: logging.Logger, level: int, event_name: str, **fields: Any
) -> None:
    """Emit one structured log line: ``{"event": <name>, **fields}``."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, format_event(event_name, **fields))


def setup_rotating_logger(
    name: str, log_config: Optional[LogConfig], *, level: int = logging.INFO
) -> logging.Logger:
    logger = logging.getLogger(name)
    if name in _CONFIGURED_LOGGERS:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_config is not None:
        log_config.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_config.path,
            maxBytes=log_config.max_bytes,
            backupCount=log_config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _CONFIGURED_LOGGERS.add(name)
    return logger


__all__ = ["format_event", "log_event", "setup_rotating_logger"]

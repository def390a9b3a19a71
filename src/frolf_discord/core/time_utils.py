from __future__ import annotations

import time
from datetime import datetime, timezone


def now_rfc3339_nano() -> str:
    """UTC timestamp with nanosecond precision, e.g. ``2024-05-01T12:00:00.123456789Z``."""
    ns = time.time_ns()
    seconds, nanos = divmod(ns, 1_000_000_000)
    base = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    return f"{base}.{nanos:09d}Z"


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC3339 timestamp, tolerating more than microsecond precision."""
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for char in rest:
            if not char.isdigit():
                break
            digits += char
        suffix = rest[len(digits) :]
        if not digits:
            raise ValueError(f"invalid fractional seconds: {value!r}")
        text = f"{head}.{digits[:6].ljust(6, '0')}{suffix}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp must carry a UTC offset: {value!r}")
    return parsed


def now_iso_utc_z() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


__all__ = ["now_iso_utc_z", "now_rfc3339_nano", "parse_rfc3339"]

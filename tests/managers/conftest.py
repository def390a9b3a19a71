from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from frolf_discord.bus.envelope import build_envelope, parse_payload, payload_dict
from frolf_discord.bus.payloads import ReplyPayload
from frolf_discord.integrations.discord.interactions import InteractionHandle
from frolf_discord.integrations.discord.reply_router import ReplyContext


@pytest.fixture()
def make_reply() -> Callable[..., ReplyContext]:
    """Build the ``ReplyContext`` a renderer would receive for a backend reply."""

    def build(
        topic: str,
        payload: dict[str, Any],
        *,
        guild_id: str = "G1",
        user_id: str = "U1",
        correlation_id: str = "corr-1",
        handle: Optional[InteractionHandle] = None,
    ) -> ReplyContext:
        envelope = build_envelope(
            payload,
            topic,
            guild_id=guild_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return ReplyContext(
            topic=topic,
            envelope=envelope,
            payload=parse_payload(envelope, ReplyPayload),
            raw=payload_dict(envelope),
            handle=handle,
        )

    return build

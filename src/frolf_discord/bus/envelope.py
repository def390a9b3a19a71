"""Bus envelopes: JSON payload bytes plus string metadata.

Every envelope the bot publishes carries ``guild_id``, ``correlation_id``,
``causation_id``, ``message_type``, ``emitted_at``, ``topic``, ``domain`` and a
dedup token; user-originated events also carry ``user_id``.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Type, TypeVar, Union

from pydantic import BaseModel

from ..core.time_utils import now_rfc3339_nano
from ..integrations.discord.interactions import InteractionHandle

DOMAIN = "discord"
MESSAGE_TYPE_VERSION = "v1"

META_GUILD_ID = "guild_id"
META_USER_ID = "user_id"
META_CORRELATION_ID = "correlation_id"
META_CAUSATION_ID = "causation_id"
META_MESSAGE_TYPE = "message_type"
META_EMITTED_AT = "emitted_at"
META_TOPIC = "topic"
META_DOMAIN = "domain"
META_DEDUP_ID = "dedup_id"
META_CHANNEL_ID = "channel_id"
META_MESSAGE_ID = "message_id"

REQUIRED_METADATA = (
    META_GUILD_ID,
    META_CORRELATION_ID,
    META_CAUSATION_ID,
    META_MESSAGE_TYPE,
    META_EMITTED_AT,
    META_TOPIC,
    META_DOMAIN,
    META_DEDUP_ID,
)

M = TypeVar("M", bound=BaseModel)
Payload = Union[BaseModel, dict[str, Any]]


class EnvelopeError(ValueError):
    """Envelope is missing required metadata or carries an unreadable payload."""


@dataclass(frozen=True)
class Envelope:
    uuid: str
    payload: bytes
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def topic(self) -> str:
        return self.metadata.get(META_TOPIC, "")

    @property
    def correlation_id(self) -> str:
        return self.metadata.get(META_CORRELATION_ID, "")

    @property
    def dedup_id(self) -> str:
        return self.metadata.get(META_DEDUP_ID) or self.uuid

    def to_fields(self) -> dict[str, str]:
        return {
            "uuid": self.uuid,
            "payload": self.payload.decode("utf-8"),
            "metadata": json.dumps(self.metadata, separators=(",", ":")),
        }

    @classmethod
    def from_fields(cls, fields: dict[Any, Any]) -> "Envelope":
        decoded = {
            (key.decode() if isinstance(key, bytes) else str(key)): (
                value.decode() if isinstance(value, bytes) else str(value)
            )
            for key, value in fields.items()
        }
        try:
            metadata = json.loads(decoded.get("metadata") or "{}")
        except ValueError as exc:
            raise EnvelopeError(f"envelope metadata is not JSON: {exc}") from exc
        if not isinstance(metadata, dict):
            raise EnvelopeError("envelope metadata must be an object")
        return cls(
            uuid=decoded.get("uuid") or "",
            payload=(decoded.get("payload") or "").encode("utf-8"),
            metadata={str(k): str(v) for k, v in metadata.items()},
        )


def message_type_for(topic: str) -> str:
    return f"{topic}.{MESSAGE_TYPE_VERSION}"


def _serialize(payload: Payload) -> bytes:
    if isinstance(payload, BaseModel):
        return payload.model_dump_json(exclude_none=True).encode("utf-8")
    if isinstance(payload, dict):
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")
    raise EnvelopeError(f"unsupported payload type: {type(payload).__name__}")


def build_envelope(
    payload: Payload,
    topic: str,
    *,
    handle: Optional[InteractionHandle] = None,
    guild_id: Optional[str] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    require_user: bool = True,
    extra_metadata: Optional[dict[str, str]] = None,
) -> Envelope:
    """Serialize ``payload`` for ``topic`` with the mandatory metadata.

    Explicit ``guild_id``/``user_id`` win over the ones on ``handle``.
    """
    if not topic:
        raise EnvelopeError("topic is required")
    resolved_guild = guild_id or (handle.guild_id if handle else "")
    resolved_user = user_id or (handle.user_id if handle else "")
    if not resolved_guild:
        raise EnvelopeError(f"guild_id is required for {topic}")
    if require_user and not resolved_user:
        raise EnvelopeError(f"user_id is required for {topic}")

    envelope_id = str(uuid.uuid4())
    metadata: dict[str, str] = {}
    if handle is not None and handle.channel_id:
        metadata[META_CHANNEL_ID] = handle.channel_id
    if handle is not None and handle.message_id:
        metadata[META_MESSAGE_ID] = handle.message_id
    if extra_metadata:
        metadata.update({str(k): str(v) for k, v in extra_metadata.items()})
    metadata.update(
        {
            META_GUILD_ID: resolved_guild,
            META_CORRELATION_ID: correlation_id or str(uuid.uuid4()),
            META_CAUSATION_ID: envelope_id,
            META_MESSAGE_TYPE: message_type_for(topic),
            META_EMITTED_AT: now_rfc3339_nano(),
            META_TOPIC: topic,
            META_DOMAIN: DOMAIN,
            META_DEDUP_ID: envelope_id,
        }
    )
    if resolved_user:
        metadata[META_USER_ID] = resolved_user
    return Envelope(uuid=envelope_id, payload=_serialize(payload), metadata=metadata)


def validate_envelope(envelope: Envelope) -> None:
    missing = [key for key in REQUIRED_METADATA if not envelope.metadata.get(key)]
    if missing:
        raise EnvelopeError(f"envelope {envelope.uuid} missing metadata: {missing}")


def parse_payload(envelope: Envelope, model: Type[M]) -> M:
    try:
        return model.model_validate_json(envelope.payload)
    except ValueError as exc:
        raise EnvelopeError(
            f"envelope {envelope.uuid} payload does not match {model.__name__}: {exc}"
        ) from exc


def payload_dict(envelope: Envelope) -> dict[str, Any]:
    try:
        data = json.loads(envelope.payload or b"{}")
    except ValueError as exc:
        raise EnvelopeError(f"envelope {envelope.uuid} payload is not JSON") from exc
    return data if isinstance(data, dict) else {}

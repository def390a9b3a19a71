from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SignupRequestPayload(_Payload):
    guild_id: str
    user_id: str
    tag_number: Optional[int] = None


class RoleUpdateRequestPayload(_Payload):
    guild_id: str
    requester_id: str
    target_user_id: str
    role: str
    role_id: str = ""


class UDiscIdentityUpdatePayload(_Payload):
    guild_id: str
    user_id: str
    username: Optional[str] = None
    name: Optional[str] = None


class ScoreUpdateRequestPayload(_Payload):
    guild_id: str
    round_id: str
    user_id: str
    score: int
    channel_id: str = ""
    message_id: str = ""


class UserProfileUpdatedPayload(_Payload):
    guild_id: str
    user_id: str
    username: str
    display_name: str = ""
    avatar_hash: str = ""


class TagClaimRequestPayload(_Payload):
    guild_id: str
    user_id: str
    tag_number: int = Field(ge=1, le=100)
    channel_id: str = ""


class RoundCreationRequestPayload(_Payload):
    guild_id: str
    user_id: str
    title: str
    start_time: str
    location: str = ""
    description: str = ""
    channel_id: str = ""


class ScorecardUrlRequestPayload(_Payload):
    import_id: str
    guild_id: str
    round_id: str
    user_id: str
    channel_id: str = ""
    message_id: str = ""
    udisc_url: str
    notes: str = ""
    timestamp: str


class ScorecardUploadedPayload(_Payload):
    import_id: str
    guild_id: str
    round_id: str
    user_id: str
    channel_id: str = ""
    message_id: str = ""
    file_name: str
    file_data: Optional[str] = None
    file_url: Optional[str] = None
    notes: str = ""
    timestamp: str


class GuildSetupRequestPayload(_Payload):
    guild_id: str
    guild_name: str = ""
    requested_by: str


class GuildConfigRetrievalPayload(_Payload):
    guild_id: str


class GuildConfigDeletionPayload(_Payload):
    guild_id: str
    requested_by: str


class ReplyPayload(_Payload):
    """Fields the reply router reads from any backend reply."""

    guild_id: str = ""
    user_id: str = ""
    channel_id: str = ""
    message_id: str = ""
    reason: str = ""
    error: str = ""
    role: str = ""
    tag_number: Optional[int] = None
    round_id: str = ""
    import_id: str = ""
    title: str = ""
    score: Optional[int] = None

    @property
    def failure_reason(self) -> str:
        return self.reason or self.error

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class RecordedCall:
    method: str
    kwargs: dict[str, Any]


@dataclass
class FakeDiscordSession:
    """Programmable ``DiscordSession`` double that records every call in order.

    ``failures`` maps a method name to exceptions raised on successive calls.
    """

    commands: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    members: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    guilds: dict[str, dict[str, Any]] = field(default_factory=dict)
    attachments: dict[str, bytes] = field(default_factory=dict)
    failures: dict[str, list[BaseException]] = field(default_factory=dict)
    calls: list[RecordedCall] = field(default_factory=list)
    dm_channel_prefix: str = "dm-"
    closed: bool = False
    _next_message_id: int = 0

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append(RecordedCall(method=method, kwargs=kwargs))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _message(self, channel_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._next_message_id += 1
        return {
            "id": f"msg-{self._next_message_id}",
            "channel_id": channel_id,
            **payload,
        }

    def calls_to(self, method: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.method == method]

    def method_names(self) -> list[str]:
        return [call.method for call in self.calls]

    async def interaction_respond(
        self, *, interaction_id: str, token: str, response: dict[str, Any]
    ) -> None:
        self._record(
            "interaction_respond",
            interaction_id=interaction_id,
            token=token,
            response=response,
        )

    async def edit_original_response(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("edit_original_response", token=token, payload=payload)
        return self._message("", payload)

    async def create_followup(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("create_followup", token=token, payload=payload)
        return self._message("", payload)

    async def open_dm_channel(self, *, user_id: str) -> str:
        self._record("open_dm_channel", user_id=user_id)
        return f"{self.dm_channel_prefix}{user_id}"

    async def send_channel_message(
        self, *, channel_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("send_channel_message", channel_id=channel_id, payload=payload)
        return self._message(channel_id, payload)

    async def edit_channel_message(
        self, *, channel_id: str, message_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record(
            "edit_channel_message",
            channel_id=channel_id,
            message_id=message_id,
            payload=payload,
        )
        return {"id": message_id, "channel_id": channel_id, **payload}

    async def delete_channel_message(self, *, channel_id: str, message_id: str) -> None:
        self._record(
            "delete_channel_message", channel_id=channel_id, message_id=message_id
        )

    async def get_guild(self, *, guild_id: str) -> dict[str, Any]:
        self._record("get_guild", guild_id=guild_id)
        return self.guilds.get(guild_id, {"id": guild_id, "name": ""})

    async def get_guild_member(self, *, guild_id: str, user_id: str) -> dict[str, Any]:
        self._record("get_guild_member", guild_id=guild_id, user_id=user_id)
        return self.members.get((guild_id, user_id), {"roles": []})

    async def add_member_role(self, *, guild_id: str, user_id: str, role_id: str) -> None:
        self._record(
            "add_member_role", guild_id=guild_id, user_id=user_id, role_id=role_id
        )

    async def remove_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None:
        self._record(
            "remove_member_role", guild_id=guild_id, user_id=user_id, role_id=role_id
        )

    async def list_guild_commands(self, *, guild_id: str) -> list[dict[str, Any]]:
        self._record("list_guild_commands", guild_id=guild_id)
        return list(self.commands.get(guild_id, []))

    async def create_guild_command(
        self, *, guild_id: str, command: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("create_guild_command", guild_id=guild_id, command=command)
        created = {"id": f"cmd-{command.get('name')}", **command}
        self.commands.setdefault(guild_id, []).append(created)
        return created

    async def delete_guild_command(self, *, guild_id: str, command_id: str) -> None:
        self._record("delete_guild_command", guild_id=guild_id, command_id=command_id)
        self.commands[guild_id] = [
            command
            for command in self.commands.get(guild_id, [])
            if command.get("id") != command_id
        ]

    async def download_attachment(
        self, url: str, *, max_bytes: int, timeout_seconds: float
    ) -> bytes:
        self._record(
            "download_attachment",
            url=url,
            max_bytes=max_bytes,
            timeout_seconds=timeout_seconds,
        )
        return self.attachments.get(url, b"")

    async def close(self) -> None:
        self.closed = True

    def last_response(self) -> Optional[dict[str, Any]]:
        responses = self.calls_to("interaction_respond")
        return responses[-1].kwargs["response"] if responses else None

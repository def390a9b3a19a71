from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from ...core.retry import retry_async
from .rest import DiscordRestClient

T = TypeVar("T")


class DiscordSession(Protocol):
    """The Discord operations the bot actually needs."""

    async def interaction_respond(
        self, *, interaction_id: str, token: str, response: dict[str, Any]
    ) -> None: ...

    async def edit_original_response(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def create_followup(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def open_dm_channel(self, *, user_id: str) -> str: ...

    async def send_channel_message(
        self, *, channel_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def edit_channel_message(
        self, *, channel_id: str, message_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_channel_message(
        self, *, channel_id: str, message_id: str
    ) -> None: ...

    async def get_guild(self, *, guild_id: str) -> dict[str, Any]: ...

    async def get_guild_member(
        self, *, guild_id: str, user_id: str
    ) -> dict[str, Any]: ...

    async def add_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None: ...

    async def remove_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None: ...

    async def list_guild_commands(self, *, guild_id: str) -> list[dict[str, Any]]: ...

    async def create_guild_command(
        self, *, guild_id: str, command: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_guild_command(self, *, guild_id: str, command_id: str) -> None: ...

    async def download_attachment(
        self, url: str, *, max_bytes: int, timeout_seconds: float
    ) -> bytes: ...

    async def close(self) -> None: ...


class RestDiscordSession:
    """``DiscordSession`` backed by the REST client, with transient retries."""

    def __init__(
        self,
        rest: DiscordRestClient,
        *,
        application_id: str,
        logger: logging.Logger,
        retry: Optional[Callable[..., Awaitable[Any]]] = None,
    ) -> None:
        self._rest = rest
        self._application_id = application_id
        self._logger = logger
        self._retry = retry or retry_async

    async def _call(self, op: Callable[[], Awaitable[T]]) -> T:
        return await self._retry(op, log=self._logger)

    async def interaction_respond(
        self, *, interaction_id: str, token: str, response: dict[str, Any]
    ) -> None:
        await self._call(
            lambda: self._rest.create_interaction_response(
                interaction_id=interaction_id,
                interaction_token=token,
                payload=response,
            )
        )

    async def edit_original_response(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.edit_original_interaction_response(
                application_id=self._application_id,
                interaction_token=token,
                payload=payload,
            )
        )

    async def create_followup(
        self, *, token: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.create_followup_message(
                application_id=self._application_id,
                interaction_token=token,
                payload=payload,
            )
        )

    async def open_dm_channel(self, *, user_id: str) -> str:
        channel = await self._call(
            lambda: self._rest.create_dm_channel(recipient_id=user_id)
        )
        return str(channel.get("id") or "")

    async def send_channel_message(
        self, *, channel_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.create_channel_message(
                channel_id=channel_id, payload=payload
            )
        )

    async def edit_channel_message(
        self, *, channel_id: str, message_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.edit_channel_message(
                channel_id=channel_id, message_id=message_id, payload=payload
            )
        )

    async def delete_channel_message(self, *, channel_id: str, message_id: str) -> None:
        await self._call(
            lambda: self._rest.delete_channel_message(
                channel_id=channel_id, message_id=message_id
            )
        )

    async def get_guild(self, *, guild_id: str) -> dict[str, Any]:
        return await self._call(lambda: self._rest.get_guild(guild_id=guild_id))

    async def get_guild_member(self, *, guild_id: str, user_id: str) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.get_guild_member(guild_id=guild_id, user_id=user_id)
        )

    async def add_member_role(self, *, guild_id: str, user_id: str, role_id: str) -> None:
        await self._call(
            lambda: self._rest.add_guild_member_role(
                guild_id=guild_id, user_id=user_id, role_id=role_id
            )
        )

    async def remove_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None:
        await self._call(
            lambda: self._rest.remove_guild_member_role(
                guild_id=guild_id, user_id=user_id, role_id=role_id
            )
        )

    async def list_guild_commands(self, *, guild_id: str) -> list[dict[str, Any]]:
        return await self._call(
            lambda: self._rest.list_application_commands(
                application_id=self._application_id, guild_id=guild_id
            )
        )

    async def create_guild_command(
        self, *, guild_id: str, command: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            lambda: self._rest.create_application_command(
                application_id=self._application_id,
                guild_id=guild_id,
                command=command,
            )
        )

    async def delete_guild_command(self, *, guild_id: str, command_id: str) -> None:
        await self._call(
            lambda: self._rest.delete_application_command(
                application_id=self._application_id,
                guild_id=guild_id,
                command_id=command_id,
            )
        )

    async def download_attachment(
        self, url: str, *, max_bytes: int, timeout_seconds: float
    ) -> bytes:
        return await self._call(
            lambda: self._rest.download_attachment(
                url, max_bytes=max_bytes, timeout_seconds=timeout_seconds
            )
        )

    async def close(self) -> None:
        await self._rest.close()

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .constants import DISCORD_API_BASE_URL
from .errors import DiscordAPIError, DiscordPermanentError, DiscordTransientError

logger = logging.getLogger(__name__)


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        try:
            body = response.json()
        except ValueError:
            return None
        raw = body.get("retry_after") if isinstance(body, dict) else None
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return None


class AttachmentTooLargeError(DiscordAPIError):
    """Attachment exceeded the configured download cap."""


class DiscordRestClient:
    """Thin async wrapper over the Discord HTTP API.

    Every failure is raised as a typed error; retry policy lives with the caller.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = DISCORD_API_BASE_URL,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._download_client = httpx.AsyncClient(follow_redirects=True)
        self._authorization_header = f"Bot {bot_token}"

    async def close(self) -> None:
        await self._client.aclose()
        await self._download_client.aclose()

    async def __aenter__(self) -> "DiscordRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | list[dict[str, Any]] | None = None,
        expect_json: bool = True,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                json=payload,
                headers={"Authorization": self._authorization_header},
            )
        except httpx.HTTPError as exc:
            raise DiscordTransientError(
                f"Discord API network error for {method} {path}: "
                f"{type(exc).__name__}: {exc}"
            ) from exc

        status_code = response.status_code
        if status_code >= 300:
            body_preview = (response.text or "").strip().replace("\n", " ")[:200]
            detail = (
                f"{method} {path}: status={status_code} body={body_preview!r}"
            )
            if status_code == 429:
                retry_after = _retry_after_seconds(response)
                logger.info(
                    "Discord rate limited on %s %s (retry_after=%s)",
                    method,
                    path,
                    retry_after,
                )
                raise DiscordTransientError(
                    f"Discord API rate limit exceeded for {detail}",
                    status_code=status_code,
                    retry_after=retry_after,
                )
            if status_code >= 500:
                raise DiscordTransientError(
                    f"Discord API server error for {detail}",
                    status_code=status_code,
                )
            if status_code in {401, 403}:
                raise DiscordPermanentError(
                    f"Discord API authorization failure for {detail}",
                    status_code=status_code,
                    user_message="I don't have permission to do that in this server.",
                )
            raise DiscordAPIError(
                f"Discord API request failed for {detail}",
                status_code=status_code,
            )

        if not expect_json:
            return None
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise DiscordAPIError(
                f"Discord API returned non-JSON success response for {method} {path}"
            ) from exc

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self._request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def get_guild(self, *, guild_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/guilds/{guild_id}")
        return payload if isinstance(payload, dict) else {}

    async def get_guild_member(self, *, guild_id: str, user_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")
        return payload if isinstance(payload, dict) else {}

    async def add_guild_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None:
        await self._request(
            "PUT",
            f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}",
            expect_json=False,
        )

    async def remove_guild_member_role(
        self, *, guild_id: str, user_id: str, role_id: str
    ) -> None:
        await self._request(
            "DELETE",
            f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}",
            expect_json=False,
        )

    async def list_application_commands(
        self, *, application_id: str, guild_id: str | None = None
    ) -> list[dict[str, Any]]:
        path = (
            f"/applications/{application_id}/commands"
            if guild_id is None
            else f"/applications/{application_id}/guilds/{guild_id}/commands"
        )
        payload = await self._request("GET", path)
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def create_application_command(
        self,
        *,
        application_id: str,
        command: dict[str, Any],
        guild_id: str | None = None,
    ) -> dict[str, Any]:
        path = (
            f"/applications/{application_id}/commands"
            if guild_id is None
            else f"/applications/{application_id}/guilds/{guild_id}/commands"
        )
        payload = await self._request("POST", path, payload=command)
        return payload if isinstance(payload, dict) else {}

    async def delete_application_command(
        self,
        *,
        application_id: str,
        command_id: str,
        guild_id: str | None = None,
    ) -> None:
        path = (
            f"/applications/{application_id}/commands/{command_id}"
            if guild_id is None
            else f"/applications/{application_id}/guilds/{guild_id}/commands/{command_id}"
        )
        await self._request("DELETE", path, expect_json=False)

    async def create_interaction_response(
        self,
        *,
        interaction_id: str,
        interaction_token: str,
        payload: dict[str, Any],
    ) -> None:
        await self._request(
            "POST",
            f"/interactions/{interaction_id}/{interaction_token}/callback",
            payload=payload,
            expect_json=False,
        )

    async def edit_original_interaction_response(
        self,
        *,
        application_id: str,
        interaction_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/webhooks/{application_id}/{interaction_token}/messages/@original",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def create_followup_message(
        self,
        *,
        application_id: str,
        interaction_token: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/webhooks/{application_id}/{interaction_token}",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def create_dm_channel(self, *, recipient_id: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "/users/@me/channels",
            payload={"recipient_id": recipient_id},
        )
        return response if isinstance(response, dict) else {}

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def edit_channel_message(
        self,
        *,
        channel_id: str,
        message_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def delete_channel_message(
        self,
        *,
        channel_id: str,
        message_id: str,
    ) -> None:
        await self._request(
            "DELETE",
            f"/channels/{channel_id}/messages/{message_id}",
            expect_json=False,
        )

    async def download_attachment(
        self,
        url: str,
        *,
        max_bytes: int,
        timeout_seconds: float,
    ) -> bytes:
        """Stream an attachment from the CDN, refusing anything over ``max_bytes``."""
        try:
            async with self._download_client.stream(
                "GET", url, timeout=timeout_seconds
            ) as response:
                if response.status_code >= 300:
                    error_cls = (
                        DiscordTransientError
                        if response.status_code == 429 or response.status_code >= 500
                        else DiscordAPIError
                    )
                    raise error_cls(
                        f"Attachment download failed: status={response.status_code}",
                        status_code=response.status_code,
                    )
                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise AttachmentTooLargeError(
                        f"Attachment is {declared} bytes; limit is {max_bytes}"
                    )
                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > max_bytes:
                        raise AttachmentTooLargeError(
                            f"Attachment exceeded {max_bytes} bytes"
                        )
                    chunks.append(chunk)
                return b"".join(chunks)
        except httpx.HTTPError as exc:
            raise DiscordTransientError(
                f"Attachment download network error: {type(exc).__name__}: {exc}"
            ) from exc

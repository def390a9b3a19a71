"""Scorecard imports: a UDisc link from a modal, or a CSV/XLSX file sent by DM.

The modal path answers the interaction directly. File mode leaves a pending
expectation keyed by ``(user_id, dm_channel_id)`` which the next qualifying
attachment in that DM consumes; feedback for files goes to the channel, since
no interaction is left to edit.
"""

from __future__ import annotations

import base64
import ipaddress
import logging
import time
import uuid
from collections import defaultdict, deque
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from ..bus import topics
from ..bus.base import PublishError
from ..bus.envelope import META_CHANNEL_ID, META_MESSAGE_ID
from ..bus.payloads import ScorecardUploadedPayload, ScorecardUrlRequestPayload
from ..core.logging_utils import log_event
from ..core.pending_uploads import PendingUpload, PendingUploadMap
from ..core.results import HandlerResult
from ..core.time_utils import now_rfc3339_nano
from ..integrations.discord.components import (
    DISCORD_TEXT_INPUT_PARAGRAPH,
    build_modal,
    build_text_input,
)
from ..integrations.discord.errors import DiscordAPIError
from ..integrations.discord.interactions import (
    InteractionKind,
    extract_modal_values,
    parse_custom_id,
)
from ..integrations.discord.permissions import PermissionLevel
from ..integrations.discord.registry import InteractionContext, InteractionRegistry
from ..integrations.discord.rest import AttachmentTooLargeError
from ..integrations.discord.reply_router import ReplyContext, ReplyRouter
from .base import BaseManager, ManagerDeps

SCORECARD_UPLOAD_PREFIX = "scorecard_upload"
SCORECARD_MODAL_PREFIX = "scorecard_upload_modal"
UDISC_URL_INPUT_ID = "udisc_url_input"
NOTES_INPUT_ID = "notes_input"

SCORECARD_EXTENSIONS = (".csv", ".xlsx")

INVALID_URL_MESSAGE = "Please provide a valid HTTPS URL on udisc.com."
URL_PUBLISH_FAILED = "Failed to upload scorecard from URL. Please try again later."
DM_FAILED = "Failed to send DM. Please check your privacy settings."
FILE_PROMPT_ACK = "📬 I've sent you a DM to upload your scorecard file."
NO_PENDING_UPLOAD = (
    "No pending scorecard upload found. Please click the 'Upload Scorecard' button first."
)
RATE_LIMITED = "Too many upload attempts. Please wait a minute and try again."
FILE_TOO_LARGE = "File too large. Maximum size is 10MB."
DOWNLOAD_FAILED = "Failed to download file. Please try again."
FILE_PUBLISH_FAILED = "Failed to process scorecard upload. Please try again."


class InvalidScorecardURL(ValueError):
    pass


def validate_udisc_url(raw_url: str) -> str:
    """Return the trimmed URL if it is https on udisc.com (or a subdomain)."""
    trimmed = (raw_url or "").strip()
    if not trimmed:
        raise InvalidScorecardURL("url is empty")
    try:
        parts = urlsplit(trimmed)
        host = (parts.hostname or "").lower()
    except ValueError as exc:
        raise InvalidScorecardURL(f"invalid url: {exc}") from exc
    if parts.scheme != "https":
        raise InvalidScorecardURL("url must use https")
    if not host:
        raise InvalidScorecardURL("url host is required")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        pass
    else:
        raise InvalidScorecardURL("ip hosts are not allowed")
    if host != "udisc.com" and not host.endswith(".udisc.com"):
        raise InvalidScorecardURL("url host must be on udisc.com")
    return trimmed


def is_scorecard_file(filename: str) -> bool:
    return filename.lower().endswith(SCORECARD_EXTENSIONS)


def scorecard_modal_id(round_id: str) -> str:
    return f"{SCORECARD_MODAL_PREFIX}|{round_id}"


def build_scorecard_modal(round_id: str) -> dict[str, Any]:
    return build_modal(
        scorecard_modal_id(round_id),
        "Upload Scorecard",
        [
            build_text_input(
                UDISC_URL_INPUT_ID,
                "UDisc URL (or reply with file)",
                placeholder="https://udisc.com/... (leave empty to upload file)",
                required=False,
                max_length=1000,
            ),
            build_text_input(
                NOTES_INPUT_ID,
                "Notes (Optional)",
                style=DISCORD_TEXT_INPUT_PARAGRAPH,
                placeholder="Any notes about this scorecard?",
                required=False,
                max_length=500,
            ),
        ],
    )


def file_prompt_message(round_id: str, notes: str, ttl_seconds: float) -> str:
    minutes = max(1, int(ttl_seconds // 60))
    return (
        "📁 **Please upload your scorecard file**\n\n"
        "Reply to this message with a CSV or XLSX file from UDisc.\n"
        f"Round ID: `{round_id}`\n"
        f"Notes: {notes}\n\n"
        "I'll process it and match the players automatically.\n\n"
        f"_This upload prompt expires in {minutes} minutes._"
    )


def _round_id_from(custom_id: str) -> str:
    _prefix, positional, _pairs = parse_custom_id(custom_id)
    return positional[0] if positional else ""


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class IngressRateLimiter:
    """Sliding one-minute window of upload attempts per ``(guild_id, user_id)``."""

    def __init__(
        self,
        limit_per_minute: int,
        *,
        window_seconds: float = 60.0,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit_per_minute
        self._window = window_seconds
        self._now = now_fn
        self._attempts: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    def allow(self, guild_id: str, user_id: str) -> bool:
        if self._limit <= 0:
            return True
        now = self._now()
        attempts = self._attempts[(guild_id, user_id)]
        while attempts and now - attempts[0] >= self._window:
            attempts.popleft()
        if len(attempts) >= self._limit:
            return False
        attempts.append(now)
        return True


class ScorecardUploadManager(BaseManager):
    name = "scorecard_upload"

    def __init__(
        self,
        deps: ManagerDeps,
        *,
        pending: PendingUploadMap,
        rate_limiter: Optional[IngressRateLimiter] = None,
    ) -> None:
        super().__init__(deps)
        self.pending = pending
        self.rate_limiter = rate_limiter or IngressRateLimiter(
            self._config.uploads.rate_limit_per_minute
        )

    def register(self, registry: InteractionRegistry) -> None:
        registry.register(
            SCORECARD_UPLOAD_PREFIX,
            self.handle_button,
            kinds=[InteractionKind.MESSAGE_COMPONENT],
            prefix=True,
            requires_setup=True,
            permission=PermissionLevel.PLAYER,
        )
        registry.register(
            SCORECARD_MODAL_PREFIX,
            self.handle_modal_submit,
            kinds=[InteractionKind.MODAL_SUBMIT],
            prefix=True,
            requires_setup=True,
            permission=PermissionLevel.PLAYER,
        )
        registry.register_message(self.handle_message_create)

    def register_replies(self, router: ReplyRouter) -> None:
        router.register(topics.ROUND_SCORES_PROCESSED_FAILED, self.render_import_failed)
        router.register(topics.SCORECARD_IMPORT_FAILED, self.render_import_failed)

    async def handle_button(self, ctx: InteractionContext) -> HandlerResult:
        round_id = _round_id_from(ctx.key)
        log_event(
            self._logger,
            logging.INFO,
            "scorecard.button",
            round_id=round_id,
            user_id=ctx.user_id,
            guild_id=ctx.guild_id,
        )
        await self.open_modal(ctx.handle, build_scorecard_modal(round_id))
        return HandlerResult(success="modal_sent")

    async def handle_modal_submit(self, ctx: InteractionContext) -> HandlerResult:
        round_id = _round_id_from(ctx.key)
        if not round_id or not _is_uuid(round_id):
            await self._upload_error(ctx, "This upload form is no longer valid.")
            return HandlerResult.failed(f"invalid round id in {ctx.key!r}")

        values = extract_modal_values(ctx.payload)
        raw_url = values.get(UDISC_URL_INPUT_ID, "").strip()
        notes = values.get(NOTES_INPUT_ID, "").strip()
        if raw_url:
            return await self._submit_url(ctx, round_id, raw_url, notes)
        return await self._prompt_for_file(ctx, round_id, notes)

    async def _submit_url(
        self, ctx: InteractionContext, round_id: str, raw_url: str, notes: str
    ) -> HandlerResult:
        try:
            url = validate_udisc_url(raw_url)
        except InvalidScorecardURL as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "scorecard.url.rejected",
                guild_id=ctx.guild_id,
                user_id=ctx.user_id,
                exc=exc,
            )
            await self._upload_error(ctx, INVALID_URL_MESSAGE)
            return HandlerResult.failed(str(exc))

        import_id = str(uuid.uuid4())
        await self.respond(
            ctx.handle,
            f"✅ Scorecard import started! Import ID: `{import_id}`\n\n"
            "I'll match the players and notify you when ready.",
        )
        payload = ScorecardUrlRequestPayload(
            import_id=import_id,
            guild_id=ctx.guild_id,
            round_id=round_id,
            user_id=ctx.user_id,
            channel_id=ctx.handle.channel_id,
            message_id=ctx.handle.message_id or "",
            udisc_url=url,
            notes=notes,
            timestamp=now_rfc3339_nano(),
        )
        try:
            await self.park_and_publish(
                topics.SCORECARD_URL_REQUESTED,
                payload,
                ctx.handle,
                correlation_id=import_id,
            )
        except PublishError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "scorecard.url.publish_failed",
                import_id=import_id,
                exc=exc,
            )
            await self.edit_original(
                ctx.handle, f"Scorecard upload failed: {URL_PUBLISH_FAILED}"
            )
            return HandlerResult.failed(str(exc))
        return HandlerResult(success=import_id)

    async def _prompt_for_file(
        self, ctx: InteractionContext, round_id: str, notes: str
    ) -> HandlerResult:
        try:
            dm_channel_id = await self._session.open_dm_channel(user_id=ctx.user_id)
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "scorecard.dm.failed",
                user_id=ctx.user_id,
                exc=exc,
            )
            await self._upload_error(ctx, DM_FAILED)
            return HandlerResult.failed(str(exc))

        record = await self.pending.remember(
            ctx.user_id,
            dm_channel_id,
            PendingUpload(
                round_id=round_id,
                guild_id=ctx.guild_id,
                notes=notes,
                source_message_id=ctx.handle.message_id or "",
                event_message_id=ctx.handle.message_id or "",
            ),
        )
        log_event(
            self._logger,
            logging.INFO,
            "scorecard.pending.stored",
            user_id=ctx.user_id,
            channel_id=dm_channel_id,
            round_id=round_id,
        )
        try:
            await self._session.send_channel_message(
                channel_id=dm_channel_id,
                payload={
                    "content": file_prompt_message(round_id, notes, record.ttl_seconds)
                },
            )
        except DiscordAPIError as exc:
            await self.pending.consume(ctx.user_id, dm_channel_id)
            log_event(
                self._logger,
                logging.ERROR,
                "scorecard.dm.failed",
                user_id=ctx.user_id,
                exc=exc,
            )
            await self._upload_error(ctx, DM_FAILED)
            return HandlerResult.failed(str(exc))

        await self.respond(ctx.handle, FILE_PROMPT_ACK)
        return HandlerResult(success="file_upload_prompted")

    async def _upload_error(self, ctx: InteractionContext, text: str) -> None:
        await self.respond(ctx.handle, f"Scorecard upload failed: {text}")

    # Attachments

    async def handle_message_create(self, message: dict[str, Any]) -> HandlerResult:
        """Turn a CSV/XLSX attachment into ``scorecard.uploaded`` if an upload is pending."""
        author = message.get("author")
        if not isinstance(author, dict) or author.get("bot"):
            return HandlerResult(success="ignored")
        attachments = message.get("attachments")
        if not isinstance(attachments, list) or not attachments:
            return HandlerResult(success="ignored")

        user_id = str(author.get("id") or "")
        channel_id = str(message.get("channel_id") or "")
        guild_id = str(message.get("guild_id") or "")
        if not user_id or not channel_id:
            return HandlerResult(success="ignored")

        if not self.rate_limiter.allow(guild_id, user_id):
            log_event(
                self._logger,
                logging.WARNING,
                "scorecard.ingress.rate_limited",
                user_id=user_id,
                guild_id=guild_id,
                channel_id=channel_id,
            )
            await self._channel_error(channel_id, RATE_LIMITED)
            return HandlerResult.failed("rate limited")

        attachment = next(
            (
                item
                for item in attachments
                if isinstance(item, dict)
                and is_scorecard_file(str(item.get("filename") or ""))
            ),
            None,
        )
        if attachment is None:
            return HandlerResult(success="no scorecard attachment")

        filename = str(attachment.get("filename") or "")
        record = await self.pending.consume(user_id, channel_id)
        if record is None:
            log_event(
                self._logger,
                logging.WARNING,
                "scorecard.pending.missing",
                user_id=user_id,
                channel_id=channel_id,
                filename=filename,
            )
            await self._channel_error(channel_id, NO_PENDING_UPLOAD)
            return HandlerResult.failed("no pending upload")

        result = await self._ingest_attachment(
            user_id, channel_id, str(message.get("id") or ""), attachment, record
        )
        if not result.ok:
            await self.pending.restore(user_id, channel_id, record)
        return result

    async def _ingest_attachment(
        self,
        user_id: str,
        channel_id: str,
        message_id: str,
        attachment: dict[str, Any],
        record: PendingUpload,
    ) -> HandlerResult:
        uploads = self._config.uploads
        filename = str(attachment.get("filename") or "")
        url = str(attachment.get("url") or "")
        try:
            size = int(attachment.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        if size > uploads.max_bytes:
            await self._channel_error(channel_id, FILE_TOO_LARGE)
            return HandlerResult.failed("attachment too large")

        file_data: Optional[str] = None
        file_url: Optional[str] = None
        if not url or size <= 0 or size <= uploads.inline_threshold_bytes:
            try:
                data = await self._session.download_attachment(
                    url,
                    max_bytes=uploads.max_bytes,
                    timeout_seconds=uploads.download_timeout_seconds,
                )
            except AttachmentTooLargeError:
                await self._channel_error(channel_id, FILE_TOO_LARGE)
                return HandlerResult.failed("attachment too large")
            except DiscordAPIError as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "scorecard.download.failed",
                    url=url,
                    user_id=user_id,
                    exc=exc,
                )
                await self._channel_error(channel_id, DOWNLOAD_FAILED)
                return HandlerResult.failed(f"download failed: {exc}")
            if len(data) > uploads.inline_threshold_bytes and url:
                file_url = url
            else:
                file_data = base64.b64encode(data).decode("ascii")
        else:
            log_event(
                self._logger,
                logging.INFO,
                "scorecard.download.skipped",
                filename=filename,
                size=size,
            )
            file_url = url

        import_id = str(uuid.uuid4())
        payload = ScorecardUploadedPayload(
            import_id=import_id,
            guild_id=record.guild_id,
            round_id=record.round_id,
            user_id=user_id,
            channel_id=channel_id,
            message_id=record.event_message_id,
            file_name=filename,
            file_data=file_data,
            file_url=file_url,
            notes=record.notes,
            timestamp=now_rfc3339_nano(),
        )
        try:
            await self.publish(
                topics.SCORECARD_UPLOADED,
                payload,
                guild_id=record.guild_id,
                user_id=user_id,
                correlation_id=import_id,
                extra_metadata={META_CHANNEL_ID: channel_id, META_MESSAGE_ID: message_id},
            )
        except PublishError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "scorecard.upload.publish_failed",
                import_id=import_id,
                exc=exc,
            )
            await self._channel_error(channel_id, FILE_PUBLISH_FAILED)
            return HandlerResult.failed(str(exc))

        await self._send_channel_text(
            channel_id,
            f"✅ Scorecard uploaded successfully! Import ID: `{import_id}`\n\n"
            "I'll match the players and notify you when ready.",
        )
        return HandlerResult(success=import_id)

    async def _channel_error(self, channel_id: str, text: str) -> None:
        await self._send_channel_text(channel_id, f"❌ {text}")

    async def _send_channel_text(self, channel_id: str, text: str) -> None:
        try:
            await self._session.send_channel_message(
                channel_id=channel_id, payload={"content": text}
            )
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "scorecard.channel_message.failed",
                channel_id=channel_id,
                exc=exc,
            )

    # Replies

    async def render_import_failed(self, reply: ReplyContext) -> str:
        reason = (
            reply.payload.failure_reason
            or "An unknown error occurred while processing the scorecard."
        )
        return f"❌ Scorecard import failed: {reason}"

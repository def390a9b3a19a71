"""Dispatch table for Discord interactions and reactions.

Slash commands resolve by command name; components and modals by custom-id,
first exactly and then by the longest registered prefix ending at a ``|``
boundary. Every resolved interaction passes the DM, setup and permission gate
before its handler runs on a background task.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from ...core.guild_config import GuildConfig, GuildConfigError, GuildConfigResolver
from ...core.logging_utils import log_event
from ...core.results import HandlerResult, run_operation
from .commands import SETUP_COMMAND_NAME
from .constants import DISCORD_EPHEMERAL_FLAG, RESPONSE_CHANNEL_MESSAGE
from .errors import DiscordAPIError
from .interactions import (
    InteractionHandle,
    InteractionKind,
    build_interaction_handle,
    extract_dispatch_key,
    extract_interaction_kind,
    extract_member_permissions,
    extract_member_role_ids,
)
from .permissions import PermissionLevel, denial_message, has_admin_bit, is_allowed
from .session import DiscordSession

DEFAULT_CONFIG_LOOKUP_TIMEOUT_SECONDS = 0.8

DM_ONLY_MESSAGE = "❌ This interaction is only available inside a server."
NOT_SET_UP_MESSAGE = (
    "❌ This server hasn't been set up yet. An admin must run `/frolf-setup` first."
)
GENERIC_FAILURE_MESSAGE = "An unexpected error occurred. Please try again later."

STATUS_ALLOWED = "allowed"
STATUS_IGNORED = "ignored"
STATUS_DM_REJECTED = "dm_rejected"
STATUS_NOT_SET_UP = "not_set_up"
STATUS_CONFIG_UNAVAILABLE = "config_unavailable"
STATUS_DENIED = "denied"

ALL_KINDS = frozenset(
    {
        InteractionKind.SLASH_COMMAND,
        InteractionKind.MESSAGE_COMPONENT,
        InteractionKind.MODAL_SUBMIT,
    }
)

InteractionHandler = Callable[["InteractionContext"], Awaitable[Any]]
GatewayEventHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class RegistryError(Exception):
    """Invalid or late handler registration."""


@dataclass(frozen=True)
class Registration:
    key: str
    handler: InteractionHandler
    kinds: frozenset[InteractionKind] = ALL_KINDS
    is_prefix: bool = False
    required_permission: PermissionLevel = PermissionLevel.NONE
    requires_setup: bool = False
    dm_bypass: bool = False

    def matches(self, key: str) -> bool:
        if not self.is_prefix:
            return key == self.key
        return key == self.key or key.startswith(f"{self.key}|")


@dataclass(frozen=True)
class InteractionContext:
    """What a handler receives: the raw payload plus everything the gate resolved."""

    payload: dict[str, Any]
    handle: InteractionHandle
    key: str
    registration: Registration
    guild_config: Optional[GuildConfig] = None
    role_ids: tuple[str, ...] = ()

    @property
    def kind(self) -> InteractionKind:
        return self.handle.kind

    @property
    def guild_id(self) -> str:
        return self.handle.guild_id

    @property
    def user_id(self) -> str:
        return self.handle.user_id


@dataclass(frozen=True)
class GateDecision:
    status: str
    message: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == STATUS_ALLOWED


def evaluate_gate(
    registration: Registration,
    *,
    key: str,
    kind: InteractionKind,
    guild_id: str,
    config: Optional[GuildConfig],
    config_error: Optional[GuildConfigError],
    role_ids: Iterable[str],
    permissions: int,
) -> GateDecision:
    """Pure gate decision; the same inputs always yield the same outcome."""
    if not guild_id:
        if registration.dm_bypass:
            return GateDecision(STATUS_ALLOWED)
        return GateDecision(STATUS_DM_REJECTED, DM_ONLY_MESSAGE)
    if kind is InteractionKind.SLASH_COMMAND and key == SETUP_COMMAND_NAME:
        return GateDecision(STATUS_ALLOWED)

    if registration.requires_setup:
        if config_error is not None:
            return _config_error_decision(config_error)
        if config is None or not config.is_complete:
            return GateDecision(STATUS_NOT_SET_UP, NOT_SET_UP_MESSAGE)

    required = registration.required_permission
    if required is PermissionLevel.NONE:
        return GateDecision(STATUS_ALLOWED)
    if has_admin_bit(permissions):
        return GateDecision(STATUS_ALLOWED)
    if config is None:
        if config_error is not None:
            return _config_error_decision(config_error)
        return GateDecision(STATUS_DENIED, denial_message(required))
    if is_allowed(required, role_ids, config, permissions=permissions):
        return GateDecision(STATUS_ALLOWED)
    return GateDecision(STATUS_DENIED, denial_message(required))


def _config_error_decision(error: GuildConfigError) -> GateDecision:
    status = (
        STATUS_NOT_SET_UP
        if not error.recoverable
        else STATUS_CONFIG_UNAVAILABLE
    )
    return GateDecision(status, error.user_message or NOT_SET_UP_MESSAGE)


@dataclass(frozen=True)
class DispatchResult:
    status: str
    key: Optional[str] = None
    result: Optional[HandlerResult] = None


class InteractionRegistry:
    def __init__(
        self,
        *,
        session: DiscordSession,
        resolver: GuildConfigResolver,
        logger: logging.Logger,
        config_lookup_timeout_seconds: float = DEFAULT_CONFIG_LOOKUP_TIMEOUT_SECONDS,
    ) -> None:
        self._session = session
        self._resolver = resolver
        self._logger = logger
        self._lookup_timeout = config_lookup_timeout_seconds
        self._exact: dict[str, Registration] = {}
        self._prefixes: list[Registration] = []
        self._reaction_handlers: list[GatewayEventHandler] = []
        self._message_handlers: list[GatewayEventHandler] = []
        self._frozen = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._idle_event = asyncio.Event()
        self._idle_event.set()

    # Registration

    def register(
        self,
        key: str,
        handler: InteractionHandler,
        *,
        kinds: Iterable[InteractionKind] = ALL_KINDS,
        prefix: bool = False,
        permission: PermissionLevel = PermissionLevel.NONE,
        requires_setup: bool = False,
        dm_bypass: bool = False,
    ) -> Registration:
        if self._frozen:
            raise RegistryError(f"registry is frozen; cannot register {key!r}")
        normalized = key.strip().rstrip("|")
        if not normalized:
            raise RegistryError("registration key must be non-empty")
        registration = Registration(
            key=normalized,
            handler=handler,
            kinds=frozenset(kinds),
            is_prefix=prefix,
            required_permission=permission,
            requires_setup=requires_setup,
            dm_bypass=dm_bypass,
        )
        if prefix:
            if any(existing.key == normalized for existing in self._prefixes):
                raise RegistryError(f"duplicate prefix registration: {normalized}")
            self._prefixes.append(registration)
            # Longest prefix wins; ties broken lexically so resolution is stable.
            self._prefixes.sort(key=lambda item: (-len(item.key), item.key))
        else:
            if normalized in self._exact:
                raise RegistryError(f"duplicate registration: {normalized}")
            self._exact[normalized] = registration
        return registration

    def register_reaction(self, handler: GatewayEventHandler) -> None:
        if self._frozen:
            raise RegistryError("registry is frozen; cannot register reaction handler")
        self._reaction_handlers.append(handler)

    def register_message(self, handler: GatewayEventHandler) -> None:
        if self._frozen:
            raise RegistryError("registry is frozen; cannot register message handler")
        self._message_handlers.append(handler)

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def keys(self) -> list[str]:
        return sorted(self._exact) + [f"{item.key}|*" for item in self._prefixes]

    def resolve(self, kind: InteractionKind, key: str) -> Optional[Registration]:
        exact = self._exact.get(key)
        if exact is not None and kind in exact.kinds:
            return exact
        if kind is InteractionKind.SLASH_COMMAND:
            return None
        for registration in self._prefixes:
            if kind in registration.kinds and registration.matches(key):
                return registration
        return None

    # Dispatch

    def dispatch(self, payload: dict[str, Any]) -> asyncio.Task[DispatchResult]:
        """Schedule ``handle_interaction`` on a tracked background task."""
        return self._spawn(self.handle_interaction(payload))

    def dispatch_reaction(self, payload: dict[str, Any]) -> list[asyncio.Task[Any]]:
        return [
            self._spawn(self._run_event_handler("reaction", handler, payload))
            for handler in self._reaction_handlers
        ]

    def dispatch_message(self, payload: dict[str, Any]) -> list[asyncio.Task[Any]]:
        return [
            self._spawn(self._run_event_handler("message", handler, payload))
            for handler in self._message_handlers
        ]

    async def wait_idle(self, timeout_seconds: Optional[float] = None) -> bool:
        """Wait for in-flight handlers; False if the deadline passed first."""
        if timeout_seconds is None:
            await self._idle_event.wait()
            return True
        try:
            await asyncio.wait_for(self._idle_event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def cancel_pending(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        self._idle_event.clear()
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not self._tasks:
            self._idle_event.set()
        if not task.cancelled() and task.exception() is not None:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.registry.task_failed",
                exc=task.exception(),
            )

    async def handle_interaction(self, payload: dict[str, Any]) -> DispatchResult:
        kind = extract_interaction_kind(payload)
        key = (extract_dispatch_key(payload) or "").strip()
        handle = build_interaction_handle(payload)
        if kind is None or handle is None or not key.strip("|"):
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.registry.ignored",
                reason="unroutable",
                interaction_type=payload.get("type"),
            )
            return DispatchResult(STATUS_IGNORED)

        registration = self.resolve(kind, key)
        if registration is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.registry.ignored",
                reason="unknown_key",
                key=key,
                kind=kind.value,
            )
            return DispatchResult(STATUS_IGNORED, key=key)

        config: Optional[GuildConfig] = None
        config_error: Optional[GuildConfigError] = None
        role_ids: list[str] = []
        permissions = extract_member_permissions(payload)
        needs_gate = bool(handle.guild_id) and not (
            kind is InteractionKind.SLASH_COMMAND and key == SETUP_COMMAND_NAME
        )
        if needs_gate and (
            registration.requires_setup
            or registration.required_permission is not PermissionLevel.NONE
        ):
            try:
                config = await self._resolver.get(
                    handle.guild_id, timeout_seconds=self._lookup_timeout
                )
            except GuildConfigError as exc:
                config_error = exc
            if registration.required_permission is not PermissionLevel.NONE:
                role_ids = await self._member_role_ids(payload, handle)

        decision = evaluate_gate(
            registration,
            key=key,
            kind=kind,
            guild_id=handle.guild_id,
            config=config,
            config_error=config_error,
            role_ids=role_ids,
            permissions=permissions,
        )
        log_event(
            self._logger,
            logging.INFO,
            "discord.registry.dispatch",
            key=key,
            registration=registration.key,
            kind=kind.value,
            guild_id=handle.guild_id,
            user_id=handle.user_id,
            status=decision.status,
        )
        if not decision.allowed:
            await self._respond_ephemeral(handle, decision.message or NOT_SET_UP_MESSAGE)
            return DispatchResult(decision.status, key=key)

        context = InteractionContext(
            payload=payload,
            handle=handle,
            key=key,
            registration=registration,
            guild_config=config,
            role_ids=tuple(role_ids),
        )
        result = await run_operation(
            f"{kind.value}:{registration.key}",
            lambda: registration.handler(context),
            self._logger,
            guild_id=handle.guild_id,
            user_id=handle.user_id,
        )
        if result.error is not None:
            await self._report_error(handle, result.error)
        return DispatchResult(STATUS_ALLOWED, key=key, result=result)

    async def _run_event_handler(
        self, event: str, handler: GatewayEventHandler, payload: dict[str, Any]
    ) -> HandlerResult:
        author = payload.get("author")
        user_id = payload.get("user_id") or (
            author.get("id") if isinstance(author, dict) else ""
        )
        return await run_operation(
            f"{event}:{getattr(handler, '__qualname__', 'handler')}",
            lambda: handler(payload),
            self._logger,
            guild_id=str(payload.get("guild_id") or ""),
            user_id=str(user_id or ""),
        )

    async def _member_role_ids(
        self, payload: dict[str, Any], handle: InteractionHandle
    ) -> list[str]:
        role_ids = extract_member_role_ids(payload)
        if role_ids is not None:
            return role_ids
        if not handle.user_id:
            return []
        try:
            member = await self._session.get_guild_member(
                guild_id=handle.guild_id, user_id=handle.user_id
            )
        except DiscordAPIError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.registry.member_lookup_failed",
                guild_id=handle.guild_id,
                user_id=handle.user_id,
                exc=exc,
            )
            return []
        roles = member.get("roles") if isinstance(member, dict) else None
        if not isinstance(roles, list):
            return []
        return [str(role) for role in roles if role]

    async def _respond_ephemeral(self, handle: InteractionHandle, text: str) -> None:
        try:
            await self._session.interaction_respond(
                interaction_id=handle.interaction_id,
                token=handle.token,
                response={
                    "type": RESPONSE_CHANNEL_MESSAGE,
                    "data": {"content": text, "flags": DISCORD_EPHEMERAL_FLAG},
                },
            )
        except DiscordAPIError as exc:
            self._logger.error(
                "Failed to send ephemeral response: %s (interaction_id=%s)",
                exc,
                handle.interaction_id,
            )

    async def _report_error(self, handle: InteractionHandle, error: BaseException) -> None:
        text = getattr(error, "user_message", None) or GENERIC_FAILURE_MESSAGE
        payload = {"content": text, "flags": DISCORD_EPHEMERAL_FLAG}
        try:
            await self._session.interaction_respond(
                interaction_id=handle.interaction_id,
                token=handle.token,
                response={"type": RESPONSE_CHANNEL_MESSAGE, "data": payload},
            )
            return
        except DiscordAPIError:
            pass
        # Already acknowledged: fall back to a follow-up on the same token.
        try:
            await self._session.create_followup(token=handle.token, payload=payload)
        except DiscordAPIError as exc:
            self._logger.error(
                "Failed to report handler error: %s (interaction_id=%s)",
                exc,
                handle.interaction_id,
            )

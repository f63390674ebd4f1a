"""Send gating (rate limit, timeouts, content filter) and moderator actions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from core.config_loader import ChatBehaviourConfig
from services.backend.client import NOT_TRUE, BackendClient
from services.backend.errors import NotFound, PermissionDenied
from shared.chat.events import InvalidPayload, format_timestamp, parse_timestamp, utc_now
from shared.logging.logger import get_logger
from shared.runtime.cooldown import CooldownGate, CooldownPolicy

log = get_logger("chat.moderation")

TIMEOUTS_TABLE = "chat_timeouts"
MODERATORS_TABLE = "stream_moderators"
STREAMS_TABLE = "streams"
CHAT_TABLE = "stream_chat"

RATE_LIMIT_RPC = "check_chat_rate_limit"
FILTER_RPC = "filter_chat_message"


# ======================================================================
# Verdicts
# ======================================================================

class SendReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMED_OUT = "timed_out"
    FILTERED = "filtered"


@dataclass(frozen=True)
class SendVerdict:
    """
    Outcome of a send check. Rejections are expected values, not errors.

    ``message`` carries the body to persist, possibly rewritten by the
    content filter. ``retry_after`` is in seconds when known.
    """
    allowed: bool
    reason: Optional[SendReason] = None
    message: Optional[str] = None
    detail: Optional[str] = None
    retry_after: Optional[float] = None

    def describe(self) -> str:
        if self.allowed:
            return ""
        if self.reason == SendReason.RATE_LIMITED:
            if self.retry_after:
                return (
                    "You are sending messages too quickly. "
                    f"Try again in {math.ceil(self.retry_after)} seconds"
                )
            return "You are sending messages too quickly"
        if self.reason == SendReason.TIMED_OUT:
            if self.retry_after:
                return f"You are timed out for {math.ceil(self.retry_after)} more seconds"
            return "You are timed out"
        if self.reason == SendReason.FILTERED:
            return "Your message was blocked by the chat filter"
        return "Message not sent"


def _allowed(message: Optional[str]) -> SendVerdict:
    return SendVerdict(allowed=True, message=message)


# ======================================================================
# Send Gate
# ======================================================================

class SendGate:
    """
    Sequences the pre-send checks for a (user, stream) pair.

    Order:
    0. local cooldown left by an earlier server rate-limit rejection
    a. server rate-limit counter (RPC)
    b. unexpired timeout row, compared against the local clock
    c. server content filter (RPC), which may block or rewrite the body

    Each step short-circuits. The only local state is the cooldown.
    """

    def __init__(
        self,
        backend: BackendClient,
        config: ChatBehaviourConfig,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        cooldown: Optional[CooldownGate] = None,
    ):
        self.backend = backend
        self.config = config
        self._clock = clock or utc_now
        self.cooldown = cooldown or CooldownGate(
            policy=CooldownPolicy(duration_seconds=config.cooldown_seconds)
        )

    # --------------------------------------------------

    async def can_send(
        self,
        user_id: str,
        stream_id: str,
        text: Optional[str] = None,
    ) -> SendVerdict:
        remaining = self.cooldown.remaining(user_id, stream_id)
        if remaining > 0:
            return SendVerdict(
                allowed=False, reason=SendReason.RATE_LIMITED, retry_after=remaining
            )

        verdict = await self.check_rate_limit(user_id, stream_id)
        if not verdict.allowed:
            return verdict

        verdict = await self.check_timeout(user_id, stream_id)
        if not verdict.allowed:
            return verdict

        if text is None:
            return _allowed(None)
        return await self.check_filter(stream_id, text)

    # --------------------------------------------------

    async def check_rate_limit(self, user_id: str, stream_id: str) -> SendVerdict:
        allowed = await self.backend.rpc(
            RATE_LIMIT_RPC,
            {
                "p_user_id": user_id,
                "p_stream_id": stream_id,
                "p_limit": self.config.rate_limit_messages,
                "p_window_seconds": self.config.rate_limit_window_seconds,
            },
        )
        if allowed is False:
            window = self.cooldown.start(user_id, stream_id)
            log.info(f"[{stream_id}] rate limit hit for {user_id}; local cooldown started")
            return SendVerdict(
                allowed=False,
                reason=SendReason.RATE_LIMITED,
                retry_after=(window.ends_at - window.started_at) if window else None,
            )
        return _allowed(None)

    async def active_timeout(self, user_id: str, stream_id: str) -> Optional[datetime]:
        """Latest expiry for the pair, or None when no timeout is in force."""
        rows = await self.backend.select(
            TIMEOUTS_TABLE,
            "expires_at",
            eq={"stream_id": stream_id, "user_id": user_id},
            order="expires_at",
            desc=True,
            limit=1,
        )
        if not rows:
            return None

        try:
            expires_at = parse_timestamp(rows[0].get("expires_at"))
        except InvalidPayload as e:
            log.warning(f"[{stream_id}] Ignoring timeout row with bad expiry: {e}")
            return None

        # Released at exact equality.
        if expires_at > self._clock():
            return expires_at
        return None

    async def check_timeout(self, user_id: str, stream_id: str) -> SendVerdict:
        expires_at = await self.active_timeout(user_id, stream_id)
        if expires_at is None:
            return _allowed(None)
        remaining = (expires_at - self._clock()).total_seconds()
        return SendVerdict(
            allowed=False,
            reason=SendReason.TIMED_OUT,
            detail=format_timestamp(expires_at),
            retry_after=remaining,
        )

    async def check_filter(self, stream_id: str, text: str) -> SendVerdict:
        result = await self.backend.rpc(FILTER_RPC, {"p_message": text, "p_stream_id": stream_id})

        row: Dict[str, Any] = {}
        if isinstance(result, list) and result and isinstance(result[0], dict):
            row = result[0]
        elif isinstance(result, dict):
            row = result

        if row.get("is_blocked"):
            log.info(f"[{stream_id}] message blocked by filter '{row.get('filter_matched')}'")
            return SendVerdict(
                allowed=False,
                reason=SendReason.FILTERED,
                detail=row.get("filter_matched"),
            )

        filtered = row.get("filtered_message")
        return _allowed(filtered if isinstance(filtered, str) and filtered else text)


# ======================================================================
# Moderation actions
# ======================================================================

class ModerationService:
    """
    Moderator-only actions for a stream.

    A user moderates a stream when they hold a grant in stream_moderators
    or own the stream. Checks are cached per (stream, user) for the life of
    the service.
    """

    def __init__(
        self,
        backend: BackendClient,
        config: ChatBehaviourConfig,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backend = backend
        self.config = config
        self._clock = clock or utc_now
        self._grants: Dict[Tuple[str, str], bool] = {}

    # --------------------------------------------------

    async def is_moderator(self, stream_id: str, user_id: str) -> bool:
        key = (stream_id, user_id)
        if key in self._grants:
            return self._grants[key]

        grants = await self.backend.select(
            MODERATORS_TABLE,
            "id",
            eq={"stream_id": stream_id, "moderator_id": user_id},
            limit=1,
        )
        granted = bool(grants)
        if not granted:
            try:
                stream = await self.backend.select(
                    STREAMS_TABLE, "user_id", eq={"id": stream_id}, single=True
                )
            except NotFound:
                stream = {}
            granted = str(stream.get("user_id") or "") == user_id

        self._grants[key] = granted
        return granted

    async def require_moderator(self, stream_id: str, user_id: str) -> None:
        if not await self.is_moderator(stream_id, user_id):
            raise PermissionDenied("You do not have permission to moderate this chat")

    async def resolve_username(self, username: str) -> str:
        name = username.strip().lstrip("@")
        if not name:
            raise ValueError("A username is required")
        try:
            row = await self.backend.select("profiles", "id", eq={"username": name}, single=True)
        except NotFound as e:
            raise ValueError(f"User {name} not found") from e
        return str(row["id"])

    # --------------------------------------------------

    async def timeout_user(
        self,
        stream_id: str,
        target_user_id: str,
        moderator_id: str,
        duration_seconds: int,
    ) -> Dict[str, Any]:
        if duration_seconds <= 0:
            raise ValueError("Timeout duration must be positive")
        await self.require_moderator(stream_id, moderator_id)

        expires_at = self._clock() + timedelta(seconds=duration_seconds)
        row = await self.backend.insert(
            TIMEOUTS_TABLE,
            {
                "stream_id": stream_id,
                "user_id": target_user_id,
                "moderator_id": moderator_id,
                "expires_at": format_timestamp(expires_at),
            },
        )
        log.info(
            f"[{stream_id}] {moderator_id} timed out {target_user_id} for {duration_seconds}s"
        )
        return row

    async def ban_user(
        self,
        stream_id: str,
        target_user_id: str,
        moderator_id: str,
    ) -> Dict[str, Any]:
        return await self.timeout_user(
            stream_id, target_user_id, moderator_id, self.config.ban_duration_seconds
        )

    async def delete_message(
        self,
        stream_id: str,
        message_id: str,
        user_id: str,
        *,
        author_id: Optional[str] = None,
    ) -> None:
        """Soft-delete a message. Authors may delete their own messages."""
        if author_id != user_id:
            await self.require_moderator(stream_id, user_id)

        await self.backend.update(
            CHAT_TABLE,
            {
                "is_deleted": True,
                "deleted_by": user_id,
                "deleted_at": format_timestamp(self._clock()),
            },
            eq={"id": message_id},
        )

    async def clear_chat(self, stream_id: str, moderator_id: str) -> int:
        await self.require_moderator(stream_id, moderator_id)
        rows = await self.backend.update(
            CHAT_TABLE,
            {
                "is_deleted": True,
                "deleted_by": moderator_id,
                "deleted_at": format_timestamp(self._clock()),
            },
            eq={"stream_id": stream_id, "is_deleted": NOT_TRUE},
        )
        log.info(f"[{stream_id}] chat cleared by {moderator_id} ({len(rows)} messages)")
        return len(rows)

"""
Chat session orchestration for a single stream.

Wires the message store, presence tracker, send gate, moderation service
and command processor around the per-session state machine:

    DISCONNECTED -> LOADING_HISTORY -> IDLE <-> SENDING
    LOADING_HISTORY -> ERROR -> (retry) LOADING_HISTORY
    any -> DISCONNECTED on stop()

Every start()/stop() bumps a generation counter. Work that completes under
an older generation is discarded instead of being applied to a torn-down
session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.config_loader import ChatConfig
from services.backend.client import BackendClient
from services.backend.errors import BackendError, PermissionDenied
from services.chat.commands import CommandProcessor, CommandRegistry, CommandServices, default_registry
from services.chat.messages import MessageStore
from services.chat.moderation import ModerationService, SendGate, SendReason, SendVerdict
from services.chat.notifications import Notifier
from services.chat.presence import PresenceHandle, PresenceTracker
from services.realtime.socket import RealtimeSocket
from shared.chat.events import ChatMessage, InvalidPayload, parse_timestamp, utc_now
from shared.logging.logger import get_logger
from shared.runtime.chat_state import ChatSessionStatus, ChatState

log = get_logger("core.session")

CHAT_TABLE = "stream_chat"
TIMEOUTS_TABLE = "chat_timeouts"


@dataclass(frozen=True)
class ChatIdentity:
    user_id: str
    username: str
    access_token: Optional[str] = None


class ChatSession:
    def __init__(
        self,
        *,
        stream_id: str,
        config: ChatConfig,
        backend: BackendClient,
        socket: Any,
        identity: Optional[ChatIdentity] = None,
        is_live: bool = True,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        gate: Optional[SendGate] = None,
        moderation: Optional[ModerationService] = None,
        registry: Optional[CommandRegistry] = None,
        track_presence: bool = True,
    ):
        self.config = config
        self.backend = backend
        self.socket = socket
        self.identity = identity
        self.is_live = is_live
        self.notifier = notifier or Notifier()
        self._clock = clock or utc_now
        self.track_presence = track_presence

        self.gate = gate or SendGate(backend, config.chat, clock=self._clock)
        self.moderation = moderation or ModerationService(backend, config.chat, clock=self._clock)
        self.commands = CommandProcessor(
            registry or default_registry(config.chat.remote_commands),
            CommandServices(backend=backend, moderation=self.moderation, config=config.chat),
            self.notifier,
        )
        self.presence = PresenceTracker(socket, self.notifier, clock=self._clock)

        self.status = ChatSessionStatus(stream_id=stream_id)
        self.store: Optional[MessageStore] = None
        self.presence_handle: Optional[PresenceHandle] = None
        self.timeouts: Dict[str, datetime] = {}
        self.is_moderator = False

        self._timeout_channel: Any = None
        self._anon_key = f"anon-{uuid.uuid4().hex[:12]}"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: ChatConfig,
        *,
        stream_id: str,
        identity: Optional[ChatIdentity] = None,
        **kwargs: Any,
    ) -> "ChatSession":
        token = identity.access_token if identity else None
        backend = BackendClient(config.backend, access_token=token)
        socket = RealtimeSocket(config.backend, config.realtime, access_token=token)
        return cls(
            stream_id=stream_id,
            config=config,
            backend=backend,
            socket=socket,
            identity=identity,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def stream_id(self) -> str:
        return self.status.stream_id or ""

    @property
    def state(self) -> ChatState:
        return self.status.state

    @property
    def generation(self) -> int:
        return self.status.generation

    @property
    def messages(self) -> List[ChatMessage]:
        return self.store.messages if self.store else []

    @property
    def viewer_count(self) -> int:
        return self.presence_handle.viewer_count if self.presence_handle else 0

    def now(self) -> datetime:
        return self._clock()

    def _stale(self, generation: int) -> bool:
        return generation != self.status.generation

    def timed_out_until(self, user_id: Optional[str] = None) -> Optional[datetime]:
        user_id = user_id or (self.identity.user_id if self.identity else None)
        if not user_id:
            return None
        expires_at = self.timeouts.get(user_id)
        if expires_at is None or expires_at <= self._clock():
            return None
        return expires_at

    def cooldown_remaining(self) -> float:
        if not self.identity:
            return 0.0
        return self.gate.cooldown.remaining(self.identity.user_id, self.stream_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ChatState:
        if self.state != ChatState.DISCONNECTED:
            log.debug(f"[{self.stream_id}] start ignored in state {self.state.value}")
            return self.state

        self.status.generation += 1
        generation = self.status.generation
        stream_id = self.stream_id

        self.status.transition(ChatState.LOADING_HISTORY)
        log.info(f"[{stream_id}] chat session starting (generation={generation})")

        if hasattr(self.socket, "connect"):
            try:
                await self.socket.connect()
            except ConnectionError as e:
                log.warning(f"[{stream_id}] realtime connect failed: {e}")

        self.store = MessageStore(self.backend, self.socket, stream_id=stream_id)
        await self.store.subscribe()
        if self._stale(generation):
            return self.state

        await self._watch_timeouts(stream_id)
        if self._stale(generation):
            return self.state

        await self._resolve_role(generation)
        if self._stale(generation):
            return self.state

        if self.track_presence:
            await self._join_presence(generation)
            if self._stale(generation):
                return self.state

        return await self._load_history(generation)

    async def retry(self) -> ChatState:
        """Manual retry after a history failure."""
        if self.state != ChatState.ERROR:
            return self.state
        self.status.transition(ChatState.LOADING_HISTORY)
        return await self._load_history(self.status.generation)

    async def stop(self) -> None:
        if self.state == ChatState.DISCONNECTED:
            return

        self.status.generation += 1
        self.status.transition(ChatState.DISCONNECTED)
        log.info(f"[{self.stream_id}] chat session stopping")

        store, self.store = self.store, None
        if store is not None:
            await store.close()

        channel, self._timeout_channel = self._timeout_channel, None
        if channel is not None:
            await channel.unsubscribe()

        await self.presence.leave()
        self.presence_handle = None
        self.timeouts = {}
        self.is_moderator = False

    async def switch_stream(self, stream_id: str, *, is_live: Optional[bool] = None) -> ChatState:
        """Fully tear down the current stream's channels, then start the next."""
        await self.stop()
        self.status.stream_id = stream_id
        if is_live is not None:
            self.is_live = is_live
        return await self.start()

    async def close(self) -> None:
        await self.stop()
        if hasattr(self.socket, "close"):
            await self.socket.close()
        await self.backend.aclose()

    # ------------------------------------------------------------------
    # Startup steps
    # ------------------------------------------------------------------

    async def _load_history(self, generation: int) -> ChatState:
        store = self.store
        if store is None:
            return self.state

        try:
            await store.load_history(self.config.chat.history_limit)
        except BackendError as e:
            if self._stale(generation):
                return self.state
            log.warning(f"[{self.stream_id}] history load failed: {e}")
            self.status.transition(ChatState.ERROR, error="Failed to load chat messages")
            return self.state

        if self._stale(generation):
            return self.state

        self.status.transition(ChatState.IDLE)
        return self.state

    async def _resolve_role(self, generation: int) -> None:
        if not self.identity:
            return
        try:
            granted = await self.moderation.is_moderator(self.stream_id, self.identity.user_id)
        except BackendError as e:
            log.warning(f"[{self.stream_id}] moderator lookup failed: {e}")
            granted = False
        if not self._stale(generation):
            self.is_moderator = granted

    async def _join_presence(self, generation: int) -> None:
        if self.identity:
            key, username = self.identity.user_id, self.identity.username
        else:
            key, username = self._anon_key, "anonymous"

        handle = await self.presence.join(self.stream_id, key, username)
        if self._stale(generation):
            await handle.close()
            return
        self.presence_handle = handle

    async def _watch_timeouts(self, stream_id: str) -> None:
        channel = self.socket.channel(f"chat_timeouts:{stream_id}")
        channel.on_postgres_changes(
            TIMEOUTS_TABLE,
            self._on_timeout_change,
            event="INSERT",
            filter=f"stream_id=eq.{stream_id}",
        )
        self._timeout_channel = channel
        await channel.subscribe()

    def _on_timeout_change(self, payload: Any) -> None:
        data = payload.get("data") if isinstance(payload, dict) else None
        record = (data or payload or {}).get("record") or {}
        user_id = record.get("user_id")
        if not user_id or str(record.get("stream_id")) != self.stream_id:
            return
        try:
            expires_at = parse_timestamp(record.get("expires_at"))
        except InvalidPayload:
            return

        current = self.timeouts.get(user_id)
        if current is None or expires_at > current:
            self.timeouts[str(user_id)] = expires_at
        if self.identity and user_id == self.identity.user_id:
            self.notifier.error("You have been timed out by a moderator")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, text: str) -> bool:
        """
        Submit chat input. Returns True when the input was persisted or
        consumed as a command. Never raises for backend or policy failures.
        """
        content = (text or "").strip()
        if not content:
            return False

        if not self.identity:
            self.notifier.error("You must be logged in to chat")
            return False
        if not self.is_live:
            self.notifier.error("Chat is disabled while stream is offline")
            return False
        if self.state != ChatState.IDLE:
            log.debug(f"[{self.stream_id}] send ignored in state {self.state.value}")
            return False

        generation = self.status.generation
        user_id = self.identity.user_id
        stream_id = self.stream_id
        self.status.transition(ChatState.SENDING)

        try:
            if self.commands.is_command(content):
                return await self.commands.process(content, user_id, stream_id)

            limit = self.config.chat.max_message_length
            if len(content) > limit:
                self.notifier.error(f"Messages are limited to {limit} characters")
                return False

            verdict = await self.gate.can_send(user_id, stream_id, content)
            if self._stale(generation):
                return False
            if not verdict.allowed:
                self._remember_rejection(user_id, verdict)
                self.notifier.error(verdict.describe())
                return False

            await self.backend.insert(
                CHAT_TABLE,
                {
                    "stream_id": stream_id,
                    "user_id": user_id,
                    "message": verdict.message or content,
                    "is_command": False,
                    "command_type": None,
                },
            )
            return True

        except PermissionDenied as e:
            log.warning(f"[{stream_id}] send rejected: {e}")
            self.notifier.error("You do not have permission to chat here")
            return False
        except BackendError as e:
            log.warning(f"[{stream_id}] send failed: {e}")
            self.notifier.error("Failed to send message")
            return False
        finally:
            if not self._stale(generation) and self.state == ChatState.SENDING:
                self.status.transition(ChatState.IDLE)

    def _remember_rejection(self, user_id: str, verdict: SendVerdict) -> None:
        if verdict.reason == SendReason.TIMED_OUT and verdict.detail:
            try:
                self.timeouts[user_id] = parse_timestamp(verdict.detail)
            except InvalidPayload:
                pass

    # ------------------------------------------------------------------
    # Moderation actions (message menu)
    # ------------------------------------------------------------------

    async def timeout_user(self, target_user_id: str, duration_seconds: int) -> bool:
        return await self._moderate(
            self.moderation.timeout_user(
                self.stream_id, target_user_id, self._actor(), duration_seconds
            ),
            f"User timed out for {duration_seconds} seconds",
            "Failed to timeout user",
        )

    async def ban_user(self, target_user_id: str) -> bool:
        return await self._moderate(
            self.moderation.ban_user(self.stream_id, target_user_id, self._actor()),
            "User has been banned",
            "Failed to ban user",
        )

    async def delete_message(self, message_id: str) -> bool:
        author_id = None
        if self.store is not None:
            message = self.store.get(message_id)
            author_id = message.user_id if message else None
        return await self._moderate(
            self.moderation.delete_message(
                self.stream_id, message_id, self._actor(), author_id=author_id
            ),
            "Message deleted",
            "Failed to delete message",
        )

    def _actor(self) -> str:
        return self.identity.user_id if self.identity else ""

    async def _moderate(self, action, success: str, failure: str) -> bool:
        if not self.identity:
            action.close()
            self.notifier.error("You must be logged in to moderate")
            return False
        try:
            await action
        except PermissionDenied as e:
            self.notifier.error(str(e) or failure)
            return False
        except (BackendError, ValueError) as e:
            log.warning(f"[{self.stream_id}] {failure}: {e}")
            self.notifier.error(failure)
            return False
        self.notifier.success(success)
        return True

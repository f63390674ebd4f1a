"""Chat history load and realtime sync for one stream."""

from __future__ import annotations

from bisect import bisect_right
from typing import Any, Callable, Dict, List, Optional, Set

from services.backend.client import NOT_TRUE, BackendClient
from services.backend.errors import BackendError
from services.realtime.channel import ChannelStatus, RealtimeChannel
from shared.chat.events import (
    UNKNOWN_AUTHOR,
    AuthorProfile,
    ChatMessage,
    InvalidPayload,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    decode_change,
    message_from_row,
    profile_from_row,
)
from shared.logging.logger import get_logger

log = get_logger("chat.messages")

CHAT_TABLE = "stream_chat"
PROFILES_TABLE = "profiles"
HISTORY_COLUMNS = "*, profiles:user_id(username, avatar_url)"

MessageCallback = Callable[[ChatMessage], Any]


class MessageSubscription:
    """Handle returned by MessageStore.subscribe()."""

    def __init__(self, store: "MessageStore", channel: RealtimeChannel, generation: int):
        self._store = store
        self.channel = channel
        self.generation = generation

    @property
    def active(self) -> bool:
        return self._store.generation == self.generation and not self._store.closed

    async def close(self) -> None:
        await self._store.close()


class MessageStore:
    """
    Ordered, visible chat messages for a single stream.

    Rules:
    - The list is always sorted by (created_at, id)
    - Soft-deleted messages are never in the list
    - Inserts are joined with the author profile before they land; a failed
      lookup falls back to UNKNOWN_AUTHOR
    - Anything that completes after close() is discarded
    """

    def __init__(
        self,
        backend: BackendClient,
        socket: Any,
        *,
        stream_id: str,
    ):
        self.backend = backend
        self._socket = socket
        self.stream_id = stream_id

        self._messages: List[ChatMessage] = []
        self._ids: Set[str] = set()
        self._removed: Set[str] = set()
        self._profiles: Dict[str, AuthorProfile] = {}

        self._channel: Optional[RealtimeChannel] = None
        self._on_insert: Optional[MessageCallback] = None
        self._on_update: Optional[MessageCallback] = None

        self.generation = 0
        self.closed = False

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[ChatMessage]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def load_history(self, limit: int) -> List[ChatMessage]:
        """
        Fetch the most recent ``limit`` visible messages, oldest first.

        The window is cut server-side (newest first), then reversed. Raises
        BackendError on failure; nothing is retried here.
        """
        generation = self.generation
        rows = await self.backend.select(
            CHAT_TABLE,
            HISTORY_COLUMNS,
            eq={"stream_id": self.stream_id, "is_deleted": NOT_TRUE},
            order="created_at",
            desc=True,
            limit=limit,
        )

        if generation != self.generation or self.closed:
            log.debug(f"[{self.stream_id}] stale history response discarded")
            return []

        history: List[ChatMessage] = []
        for row in rows:
            try:
                message = message_from_row(row)
            except InvalidPayload as e:
                log.warning(f"[{self.stream_id}] Skipping invalid history row: {e}")
                continue
            if message.is_deleted:
                continue
            history.append(message)

        history.sort(key=lambda m: m.sort_key)

        # Realtime inserts may have landed while the fetch was in flight.
        history_ids = {m.id for m in history}
        pending = [m for m in self._messages if m.id not in history_ids]
        self._messages = []
        self._ids = set()
        for message in history + pending:
            if message.id in self._removed:
                continue
            self._place(message)
            if message.author is not UNKNOWN_AUTHOR:
                self._profiles.setdefault(message.user_id, message.author)

        log.info(f"[{self.stream_id}] Loaded {len(history)} chat messages")
        return self.messages

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    @staticmethod
    def channel_name(stream_id: str) -> str:
        return f"stream_chat:{stream_id}"

    async def subscribe(
        self,
        on_insert: Optional[MessageCallback] = None,
        on_update: Optional[MessageCallback] = None,
    ) -> MessageSubscription:
        if self._channel is not None:
            raise RuntimeError(f"[{self.stream_id}] already subscribed")

        self._on_insert = on_insert
        self._on_update = on_update

        channel = self._socket.channel(self.channel_name(self.stream_id))
        channel.on_postgres_changes(
            CHAT_TABLE,
            self.handle_change,
            event="*",
            filter=f"stream_id=eq.{self.stream_id}",
        )
        self._channel = channel

        status = await channel.subscribe()
        if status != ChannelStatus.SUBSCRIBED:
            log.warning(f"[{self.stream_id}] chat channel not subscribed: {status.value}")

        return MessageSubscription(self, channel, self.generation)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.generation += 1

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.unsubscribe()
        log.info(f"[{self.stream_id}] message store closed")

    async def handle_change(self, payload: Any) -> None:
        """Decode one postgres_changes payload and apply it."""
        if self.closed:
            return

        try:
            event = decode_change(payload)
        except InvalidPayload as e:
            log.warning(f"[{self.stream_id}] Dropping invalid change payload: {e}")
            return

        if isinstance(event, MessageInserted):
            await self._apply_insert(event.message)
        elif isinstance(event, MessageUpdated):
            self._apply_update(event)
        elif isinstance(event, MessageDeleted):
            self._remove(event.message_id)

    async def _apply_insert(self, message: ChatMessage) -> None:
        if message.stream_id != self.stream_id:
            return
        if message.is_deleted or message.id in self._ids or message.id in self._removed:
            return

        generation = self.generation
        author = await self.resolve_author(message.user_id)

        if generation != self.generation or self.closed:
            log.debug(f"[{self.stream_id}] insert {message.id} arrived after close; dropped")
            return
        # A delete may have landed during the lookup.
        if message.id in self._ids or message.id in self._removed:
            return

        message = message.with_author(author)
        self._place(message)
        if self._on_insert is not None:
            self._fire(self._on_insert, message)

    def _apply_update(self, event: MessageUpdated) -> None:
        message = event.message
        if event.soft_deleted:
            self._remove(message.id)
            return

        # Plain edit: keep position and resolved author, take the new body.
        for index, existing in enumerate(self._messages):
            if existing.id == message.id:
                updated = message.with_author(existing.author)
                self._messages[index] = updated
                if self._on_update is not None:
                    self._fire(self._on_update, updated)
                return

    # ------------------------------------------------------------------
    # Author join
    # ------------------------------------------------------------------

    async def resolve_author(self, user_id: str) -> AuthorProfile:
        cached = self._profiles.get(user_id)
        if cached is not None:
            return cached

        try:
            row = await self.backend.select(
                PROFILES_TABLE, "username, avatar_url", eq={"id": user_id}, single=True
            )
        except BackendError as e:
            log.warning(f"[{self.stream_id}] Author lookup failed for {user_id}: {e}")
            return UNKNOWN_AUTHOR

        profile = profile_from_row(row)
        if profile is None:
            return UNKNOWN_AUTHOR
        self._profiles[user_id] = profile
        return profile

    # ------------------------------------------------------------------
    # List maintenance
    # ------------------------------------------------------------------

    def _place(self, message: ChatMessage) -> None:
        if message.id in self._ids:
            return
        if not self._messages or message.sort_key >= self._messages[-1].sort_key:
            self._messages.append(message)
        else:
            keys = [m.sort_key for m in self._messages]
            self._messages.insert(bisect_right(keys, message.sort_key), message)
        self._ids.add(message.id)

    def _remove(self, message_id: str) -> None:
        self._removed.add(message_id)
        if message_id not in self._ids:
            return
        self._messages = [m for m in self._messages if m.id != message_id]
        self._ids.discard(message_id)
        log.debug(f"[{self.stream_id}] message {message_id} removed")

    def _fire(self, callback: MessageCallback, message: ChatMessage) -> None:
        try:
            callback(message)
        except Exception as e:
            log.warning(f"[{self.stream_id}] message callback error ignored: {e}")

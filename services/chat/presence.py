from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from services.chat.notifications import Notifier
from services.realtime.channel import ChannelStatus, RealtimeChannel
from services.realtime.presence import PresenceMap
from shared.chat.events import InvalidPayload, format_timestamp, parse_timestamp, utc_now
from shared.logging.logger import get_logger

log = get_logger("chat.presence")


@dataclass(frozen=True)
class PresenceEntry:
    user_id: str
    username: str
    joined_at: datetime


def _entry(key: str, metas: List[Dict[str, Any]]) -> PresenceEntry:
    meta = metas[0] if metas else {}
    username = meta.get("username") or key
    try:
        joined_at = parse_timestamp(meta.get("joined_at"))
    except InvalidPayload:
        joined_at = utc_now()
    return PresenceEntry(user_id=str(meta.get("user_id") or key), username=str(username), joined_at=joined_at)


class PresenceHandle:
    """
    Live view of one stream's presence channel.

    The set of active users mirrors the backend: full syncs replace it and
    join/leave diffs patch it. Nothing here retries; if the channel drops,
    the set simply stops changing until the next join().
    """

    def __init__(
        self,
        *,
        stream_id: str,
        user_id: str,
        username: str,
        channel: RealtimeChannel,
        notifier: Notifier,
        clock: Callable[[], datetime],
    ):
        self.stream_id = stream_id
        self.user_id = user_id
        self.username = username
        self.channel = channel
        self._notifier = notifier
        self._clock = clock

        self.active_users: Dict[str, PresenceEntry] = {}
        self.status: ChannelStatus = ChannelStatus.CLOSED
        self._initial_synced = False
        self._closed = False

        channel.on_presence("sync", self._on_sync)
        channel.on_presence("join", self._on_join)
        channel.on_presence("leave", self._on_leave)

    # ------------------------------------------------------------

    @property
    def viewer_count(self) -> int:
        return len(self.active_users)

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> ChannelStatus:
        self.status = await self.channel.subscribe()
        if self.status != ChannelStatus.SUBSCRIBED:
            log.warning(f"[{self.stream_id}] presence join failed: {self.status.value}")
            return self.status

        await self.channel.track(
            {
                "user_id": self.user_id,
                "username": self.username,
                "joined_at": format_timestamp(self._clock()),
            }
        )
        log.info(f"[{self.stream_id}] presence tracked for {self.username}")
        return self.status

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.channel.unsubscribe()
        self.active_users = {}
        self.status = ChannelStatus.CLOSED

    # ------------------------------------------------------------

    def _on_sync(self, state: PresenceMap) -> None:
        if self._closed:
            return
        self.active_users = {key: _entry(key, metas) for key, metas in state.items() if metas}
        self._initial_synced = True

    def _on_join(self, key: str, metas: List[Dict[str, Any]]) -> None:
        if self._closed or not self._initial_synced or key == self.user_id:
            return
        if key in self.active_users:
            # Another connection of a user already present.
            return
        entry = _entry(key, metas)
        self.active_users[key] = entry
        self._notifier.info(f"{entry.username} joined the chat")

    def _on_leave(self, key: str, metas: List[Dict[str, Any]]) -> None:
        if self._closed or key == self.user_id:
            return
        if key in self.channel.presence_state():
            return
        entry = self.active_users.pop(key, None) or _entry(key, metas)
        self._notifier.info(f"{entry.username} left the chat")


class PresenceTracker:
    """
    Joins per-stream presence channels. At most one handle is live; joining
    another stream closes the previous handle first.
    """

    def __init__(
        self,
        socket: Any,
        notifier: Notifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._socket = socket
        self._notifier = notifier
        self._clock = clock or utc_now
        self.current: Optional[PresenceHandle] = None

    @staticmethod
    def channel_name(stream_id: str) -> str:
        return f"stream_presence:{stream_id}"

    async def join(
        self,
        stream_id: str,
        user_id: str,
        username: Optional[str] = None,
    ) -> PresenceHandle:
        await self.leave()

        channel = self._socket.channel(self.channel_name(stream_id), presence_key=user_id)
        handle = PresenceHandle(
            stream_id=stream_id,
            user_id=user_id,
            username=username or user_id,
            channel=channel,
            notifier=self._notifier,
            clock=self._clock,
        )
        self.current = handle
        await handle.open()
        return handle

    async def leave(self) -> None:
        handle, self.current = self.current, None
        if handle is not None:
            await handle.close()

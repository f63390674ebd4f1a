from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from services.realtime.presence import PresenceMap, PresenceState
from shared.logging.logger import get_logger

if TYPE_CHECKING:
    from services.realtime.socket import RealtimeSocket

log = get_logger("realtime.channel")

Handler = Callable[..., Union[None, Awaitable[None]]]

PRESENCE_EVENTS = {"sync", "join", "leave"}


class ChannelStatus(str, Enum):
    CLOSED = "CLOSED"
    JOINING = "JOINING"
    SUBSCRIBED = "SUBSCRIBED"
    TIMED_OUT = "TIMED_OUT"
    CHANNEL_ERROR = "CHANNEL_ERROR"


@dataclass
class PostgresBinding:
    table: str
    handler: Handler
    event: str = "*"
    schema: str = "public"
    filter: Optional[str] = None
    ids: List[Any] = field(default_factory=list)

    def to_config(self) -> Dict[str, Any]:
        config = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config

    def matches(self, data: Dict[str, Any], ids: List[Any]) -> bool:
        if self.ids and ids:
            return any(i in self.ids for i in ids)
        if data.get("table") not in (None, self.table):
            return False
        return self.event == "*" or data.get("type") == self.event


async def _call(handler: Handler, *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class RealtimeChannel:
    """
    One topic on the realtime socket.

    Rules:
    - Bindings are declared before subscribe(); they become the join config
    - Handlers run in delivery order; an async handler is awaited before the
      next frame for this channel is processed
    - A handler error is logged and dropped, it never kills the socket loop
    """

    JOIN_TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        socket: "RealtimeSocket",
        name: str,
        *,
        presence_key: str = "",
    ):
        self.socket = socket
        self.name = name
        self.topic = f"realtime:{name}"
        self.presence_key = presence_key
        self.status = ChannelStatus.CLOSED

        self._postgres: List[PostgresBinding] = []
        self._presence_handlers: Dict[str, List[Handler]] = {e: [] for e in PRESENCE_EVENTS}
        self._presence = PresenceState()
        self._on_status: Optional[Callable[[ChannelStatus], Any]] = None

        self._join_ref: Optional[str] = None
        self._join_future: Optional[asyncio.Future] = None
        self._last_track: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def on_postgres_changes(
        self,
        table: str,
        handler: Handler,
        *,
        event: str = "*",
        filter: Optional[str] = None,
        schema: str = "public",
    ) -> "RealtimeChannel":
        self._postgres.append(
            PostgresBinding(table=table, handler=handler, event=event, schema=schema, filter=filter)
        )
        return self

    def on_presence(self, event: str, handler: Handler) -> "RealtimeChannel":
        if event not in PRESENCE_EVENTS:
            raise ValueError(f"Unsupported presence event: {event}")
        self._presence_handlers[event].append(handler)
        return self

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _join_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": self.presence_key},
                "postgres_changes": [b.to_config() for b in self._postgres],
            }
        }
        if self.socket.access_token:
            payload["access_token"] = self.socket.access_token
        return payload

    async def subscribe(
        self,
        on_status: Optional[Callable[[ChannelStatus], Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ChannelStatus:
        """
        Join the topic and wait for the backend's reply.

        Returns the resulting status instead of raising; callers decide
        whether a failed join matters.
        """
        if on_status is not None:
            self._on_status = on_status

        self.socket.add_channel(self)
        await self._join(timeout=timeout)
        return self.status

    async def _join(self, *, timeout: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        self._join_ref = self.socket.make_ref()
        self._join_future = loop.create_future()
        self.status = ChannelStatus.JOINING

        await self.socket.push(
            {
                "topic": self.topic,
                "event": "phx_join",
                "payload": self._join_payload(),
                "ref": self._join_ref,
                "join_ref": self._join_ref,
            }
        )

        try:
            reply = await asyncio.wait_for(
                self._join_future, timeout or self.JOIN_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            log.warning(f"[{self.name}] join timed out")
            await self._set_status(ChannelStatus.TIMED_OUT)
            return

        if reply.get("status") != "ok":
            log.warning(f"[{self.name}] join rejected: {reply.get('response')}")
            await self._set_status(ChannelStatus.CHANNEL_ERROR)
            return

        response = reply.get("response") or {}
        server_bindings = response.get("postgres_changes") or []
        for binding, server in zip(self._postgres, server_bindings):
            if isinstance(server, dict) and "id" in server:
                binding.ids = [server["id"]]

        log.info(f"[{self.name}] channel subscribed")
        await self._set_status(ChannelStatus.SUBSCRIBED)

        if self._last_track is not None:
            await self.track(self._last_track)

    async def rejoin(self) -> None:
        """Called by the socket after a reconnect."""
        if self.status == ChannelStatus.CLOSED:
            return
        self._presence.clear()
        await self._join()

    async def track(self, payload: Dict[str, Any]) -> None:
        self._last_track = dict(payload)
        if self.status != ChannelStatus.SUBSCRIBED:
            return
        await self.socket.push(
            {
                "topic": self.topic,
                "event": "presence",
                "payload": {"type": "presence", "event": "track", "payload": dict(payload)},
                "ref": self.socket.make_ref(),
                "join_ref": self._join_ref,
            }
        )

    async def unsubscribe(self) -> None:
        if self.status == ChannelStatus.CLOSED:
            return

        was_joined = self.status in (ChannelStatus.SUBSCRIBED, ChannelStatus.JOINING)
        self.status = ChannelStatus.CLOSED
        self._last_track = None
        self._presence.clear()

        if self._join_future is not None and not self._join_future.done():
            self._join_future.cancel()

        if was_joined:
            try:
                await self.socket.push(
                    {
                        "topic": self.topic,
                        "event": "phx_leave",
                        "payload": {},
                        "ref": self.socket.make_ref(),
                        "join_ref": self._join_ref,
                    }
                )
            except ConnectionError as e:
                log.debug(f"[{self.name}] leave not sent: {e}")

        self.socket.remove_channel(self)
        log.info(f"[{self.name}] channel unsubscribed")

    def presence_state(self) -> PresenceMap:
        return self._presence.list()

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def dispatch(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "phx_reply":
            if frame.get("ref") == self._join_ref and self._join_future is not None:
                if not self._join_future.done():
                    self._join_future.set_result(payload)
            return

        if self.status == ChannelStatus.CLOSED:
            return

        if event == "postgres_changes":
            await self._dispatch_postgres(payload)
        elif event == "presence_state":
            joins, leaves = self._presence.sync_state(payload)
            await self._dispatch_presence(joins, leaves)
        elif event == "presence_diff":
            joins, leaves = self._presence.sync_diff(payload)
            await self._dispatch_presence(joins, leaves)
        elif event in ("phx_error", "phx_close"):
            log.warning(f"[{self.name}] channel {event}")
            if event == "phx_error":
                await self._set_status(ChannelStatus.CHANNEL_ERROR)
        elif event == "system":
            log.debug(f"[{self.name}] system frame: {payload}")

    async def _dispatch_postgres(self, payload: Dict[str, Any]) -> None:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        ids = payload.get("ids") or []
        for binding in self._postgres:
            if not binding.matches(data, ids):
                continue
            await self._safe_call(binding.handler, payload)

    async def _dispatch_presence(self, joins: PresenceMap, leaves: PresenceMap) -> None:
        for key, metas in joins.items():
            for handler in self._presence_handlers["join"]:
                await self._safe_call(handler, key, metas)
        for key, metas in leaves.items():
            for handler in self._presence_handlers["leave"]:
                await self._safe_call(handler, key, metas)
        for handler in self._presence_handlers["sync"]:
            await self._safe_call(handler, self._presence.list())

    async def _safe_call(self, handler: Handler, *args: Any) -> None:
        try:
            await _call(handler, *args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[{self.name}] handler error ignored: {e}")

    async def _set_status(self, status: ChannelStatus) -> None:
        self.status = status
        if self._on_status is not None:
            await self._safe_call(self._on_status, status)

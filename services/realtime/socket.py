import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from core.config_loader import BackendConfig, RealtimeConfig
from services.realtime.channel import RealtimeChannel
from shared.logging.logger import get_logger

log = get_logger("realtime.socket")

PROTOCOL_VSN = "1.0.0"

Connector = Callable[[str], Awaitable[Any]]


class RealtimeUnavailable(ConnectionError):
    """
    Raised when the socket gives up reconnecting. Channels stop receiving
    frames; a new session has to be started to resume.
    """


class RealtimeSocket:
    """
    Phoenix-protocol websocket shared by every channel of a session.

    Rules:
    - One connection, many topics; frames are routed to channels by topic
    - Heartbeats keep the connection alive on the configured interval
    - Drops reconnect with bounded exponential backoff and rejoin channels
    - Frames pushed while disconnected are buffered and flushed on connect
    """

    INITIAL_BACKOFF_SECONDS = 1.0

    def __init__(
        self,
        backend: BackendConfig,
        realtime: Optional[RealtimeConfig] = None,
        *,
        access_token: Optional[str] = None,
        connector: Optional[Connector] = None,
    ):
        self.backend = backend
        self.config = realtime or RealtimeConfig()
        self.access_token = access_token or backend.anon_key

        self.url = f"{backend.realtime_url}?apikey={backend.anon_key}&vsn={PROTOCOL_VSN}"
        self._connector = connector or websockets.connect

        self._ws: Any = None
        self._channels: Dict[str, RealtimeChannel] = {}
        self._buffer: List[Dict[str, Any]] = []
        self._ref = 0

        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._rejoin_tasks: Set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def channel(self, name: str, *, presence_key: str = "") -> RealtimeChannel:
        return RealtimeChannel(self, name, presence_key=presence_key)

    def add_channel(self, channel: RealtimeChannel) -> None:
        existing = self._channels.get(channel.topic)
        if existing is not None and existing is not channel:
            log.warning(f"Replacing existing channel for topic {channel.topic}")
        self._channels[channel.topic] = channel

    def remove_channel(self, channel: RealtimeChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            self._channels.pop(channel.topic, None)

    @property
    def channels(self) -> List[RealtimeChannel]:
        return list(self._channels.values())

    def make_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._ws is not None:
            return
        self._closed = False

        log.info(f"Connecting realtime socket ({self.backend.realtime_url})")
        try:
            self._ws = await self._connector(self.url)
        except (WebSocketException, OSError) as e:
            raise RealtimeUnavailable(f"Realtime connect failed: {e}") from e
        try:
            await self._flush()
        except (ConnectionClosed, OSError) as e:
            self._ws = None
            raise RealtimeUnavailable(f"Realtime connection dropped on connect: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def close(self) -> None:
        self._closed = True

        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._heartbeat_task = None
        self._reader_task = None

        for task in list(self._rejoin_tasks):
            task.cancel()
        self._rejoin_tasks.clear()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                log.debug(f"Error during realtime close ignored: {e}")

        self._channels.clear()
        self._buffer.clear()
        log.info("Realtime socket closed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def push(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            if self._closed:
                raise ConnectionError("realtime socket is closed")
            self._buffer.append(frame)
            return

        try:
            await self._ws.send(json.dumps(frame))
        except (ConnectionClosed, OSError) as e:
            log.warning(f"Realtime push failed, buffering frame: {e}")
            self._buffer.append(frame)

    async def _flush(self) -> None:
        pending, self._buffer = self._buffer, []
        for index, frame in enumerate(pending):
            try:
                await self._ws.send(json.dumps(frame))
            except (ConnectionClosed, OSError):
                # Unsent frames go back in front of anything pushed meanwhile.
                self._buffer = pending[index:] + self._buffer
                raise

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_seconds
        while not self._closed:
            await asyncio.sleep(interval)
            if self._ws is None:
                continue
            await self.push(
                {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self.make_ref()}
            )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        while not self._closed:
            try:
                async for raw in self._ws:
                    await self._route(raw)
            except asyncio.CancelledError:
                raise
            except (ConnectionClosed, OSError) as e:
                log.warning(f"Realtime connection dropped: {e}")

            if self._closed:
                break

            self._ws = None
            try:
                await self._reconnect()
            except RealtimeUnavailable as e:
                log.error(str(e))
                self._closed = True
                break

    async def _route(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            log.debug(f"Ignoring non-JSON realtime frame: {str(raw)[:200]}")
            return
        if not isinstance(frame, dict):
            return

        topic = frame.get("topic")
        if topic == "phoenix":
            return

        channel = self._channels.get(topic)
        if channel is None:
            log.debug(f"Frame for unknown topic {topic} ignored")
            return
        await channel.dispatch(frame)

    async def _reconnect(self) -> None:
        backoff_seconds = self.INITIAL_BACKOFF_SECONDS
        attempts = 0

        while not self._closed:
            attempts += 1
            if attempts > self.config.max_reconnect_attempts:
                raise RealtimeUnavailable(
                    f"Realtime reconnect failed after {attempts - 1} attempts"
                )

            log.debug(f"Realtime reconnect in {backoff_seconds:.1f}s (attempt={attempts})")
            await asyncio.sleep(backoff_seconds)
            backoff_seconds = min(backoff_seconds * 2, self.config.max_backoff_seconds)

            try:
                self._ws = await self._connector(self.url)
            except (WebSocketException, OSError) as e:
                log.warning(f"Realtime reconnect attempt {attempts} failed: {e}")
                continue

            # Joins are re-sent by rejoin() below with fresh refs.
            self._buffer = [
                f for f in self._buffer if f.get("event") not in ("phx_join", "heartbeat")
            ]
            try:
                await self._flush()
            except (ConnectionClosed, OSError) as e:
                log.warning(f"Realtime reconnect attempt {attempts} dropped during flush: {e}")
                self._ws = None
                continue

            log.info("Realtime socket reconnected; rejoining channels")
            for channel in self.channels:
                # Rejoin in the background; the reply arrives on this loop.
                task = asyncio.create_task(channel.rejoin())
                self._rejoin_tasks.add(task)
                task.add_done_callback(self._rejoin_done)
            return

    def _rejoin_done(self, task: asyncio.Task) -> None:
        self._rejoin_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(f"Channel rejoin failed: {error}")

"""Shared fakes for chat tests: an in-memory backend and a loopback socket."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("STREAMCHAT_LOG_TO_FILE", "0")

from core.config_loader import ChatConfig, load_chat_config
from services.backend.client import NOT_TRUE
from services.backend.errors import NotFound
from services.realtime.channel import RealtimeChannel

T0 = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def ts(seconds: float = 0) -> str:
    return (T0 + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def chat_row(
    message_id: str,
    *,
    offset: float,
    user_id: str = "u-1",
    stream_id: str = "s-1",
    text: Optional[str] = None,
    is_deleted: bool = False,
    username: Optional[str] = None,
) -> Dict[str, Any]:
    row = {
        "id": message_id,
        "stream_id": stream_id,
        "user_id": user_id,
        "message": text if text is not None else f"message {message_id}",
        "created_at": ts(offset),
        "is_deleted": is_deleted,
        "is_command": False,
        "command_type": None,
    }
    if username:
        row["profiles"] = {"username": username, "avatar_url": None}
    return row


def change(event_type: str, record: Optional[dict] = None, old: Optional[dict] = None,
           table: str = "stream_chat") -> Dict[str, Any]:
    return {
        "ids": [],
        "data": {
            "type": event_type,
            "schema": "public",
            "table": table,
            "record": record or {},
            "old_record": old or {},
            "commit_timestamp": ts(),
        },
    }


class MutableClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class MonotonicClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ----------------------------------------------------------------------
# Backend
# ----------------------------------------------------------------------

class FakeBackend:
    """In-memory stand-in for BackendClient with the same call surface."""

    def __init__(self, tables: Optional[Dict[str, List[dict]]] = None):
        self.tables: Dict[str, List[dict]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.rpc_results: Dict[str, Any] = {}
        self.failures: Dict[tuple, Exception] = {}
        self.calls: List[tuple] = []
        self.gates: Dict[tuple, asyncio.Event] = {}
        self.closed = False
        self._ids = 0

    def rows(self, table: str) -> List[dict]:
        return self.tables.setdefault(table, [])

    async def _enter(self, op: str, table: str) -> None:
        gate = self.gates.get((op, table))
        if gate is not None:
            await gate.wait()
        error = self.failures.get((op, table))
        if error is not None:
            raise error

    @staticmethod
    def _matches(row: dict, eq: Optional[dict]) -> bool:
        for column, value in (eq or {}).items():
            if value is NOT_TRUE:
                if row.get(column) is True:
                    return False
            elif row.get(column) != value:
                return False
        return True

    async def select(self, table, columns="*", *, eq=None, order=None, desc=False,
                     limit=None, single=False):
        self.calls.append(("select", table, dict(eq or {})))
        await self._enter("select", table)

        rows = [dict(r) for r in self.rows(table) if self._matches(r, eq)]
        if order:
            rows.sort(key=lambda r: r.get(order) or "", reverse=desc)
        if single:
            if not rows:
                raise NotFound(f"No row in {table}", status_code=406)
            return rows[0]
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table, row):
        self.calls.append(("insert", table, dict(row)))
        await self._enter("insert", table)

        self._ids += 1
        stored = dict(row)
        stored.setdefault("id", f"{table}-{self._ids}")
        self.rows(table).append(stored)
        return dict(stored)

    async def update(self, table, values, *, eq):
        self.calls.append(("update", table, dict(eq)))
        await self._enter("update", table)

        updated = []
        for row in self.rows(table):
            if self._matches(row, eq):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def rpc(self, function, args=None):
        self.calls.append(("rpc", function, dict(args or {})))
        await self._enter("rpc", function)

        result = self.rpc_results.get(function)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(args or {})
        return result

    async def aclose(self):
        self.closed = True

    def count(self, op: str, table: str) -> int:
        return sum(1 for c in self.calls if c[0] == op and c[1] == table)


# ----------------------------------------------------------------------
# Realtime
# ----------------------------------------------------------------------

class FakeSocket:
    """
    Loopback socket for real RealtimeChannel objects. Joins are acknowledged
    immediately unless ``join_status`` says otherwise.
    """

    access_token = "anon-key"

    def __init__(self, join_status: str = "ok"):
        self.join_status = join_status
        self.pushed: List[dict] = []
        self.events: List[tuple] = []
        self.created: List[RealtimeChannel] = []
        self._channels: Dict[str, RealtimeChannel] = {}
        self._ref = 0

    def channel(self, name: str, *, presence_key: str = "") -> RealtimeChannel:
        channel = RealtimeChannel(self, name, presence_key=presence_key)
        self.created.append(channel)
        return channel

    def add_channel(self, channel: RealtimeChannel) -> None:
        self._channels[channel.topic] = channel
        self.events.append(("add", channel.name))

    def remove_channel(self, channel: RealtimeChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            self._channels.pop(channel.topic)
        self.events.append(("remove", channel.name))

    def make_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    @property
    def topics(self) -> List[str]:
        return list(self._channels)

    def get(self, name: str) -> Optional[RealtimeChannel]:
        return self._channels.get(f"realtime:{name}")

    async def push(self, frame: dict) -> None:
        self.pushed.append(frame)
        if frame.get("event") != "phx_join" or self.join_status is None:
            return
        channel = self._channels.get(frame["topic"])
        await channel.dispatch(
            {
                "topic": frame["topic"],
                "event": "phx_reply",
                "ref": frame["ref"],
                "payload": {"status": self.join_status, "response": {}},
            }
        )

    async def emit(self, name: str, event: str, payload: Any) -> None:
        channel = self.get(name)
        assert channel is not None, f"no channel {name}"
        await channel.dispatch({"topic": channel.topic, "event": event, "payload": payload})

    def pushed_events(self, event: str) -> List[dict]:
        return [f for f in self.pushed if f.get("event") == event]


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def config() -> ChatConfig:
    return load_chat_config(
        {"backend": {"url": "https://example.test", "anon_key": "anon-key"}},
        use_env=False,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


def run(coro):
    return asyncio.run(coro)


def allow_all(backend: FakeBackend) -> None:
    """Server checks that accept everything and leave the text unchanged."""
    backend.rpc_results["check_chat_rate_limit"] = True
    backend.rpc_results["filter_chat_message"] = lambda args: [
        {"filtered_message": args["p_message"], "is_blocked": False, "filter_matched": None}
    ]



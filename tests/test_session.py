import asyncio
from datetime import timedelta

import pytest

from core.session import ChatIdentity, ChatSession
from services.backend.errors import BackendUnavailable, PermissionDenied
from services.chat.moderation import SendGate
from shared.chat.events import format_timestamp
from shared.runtime.chat_state import ChatState, InvalidTransition
from shared.runtime.cooldown import CooldownGate, CooldownPolicy

from conftest import FakeBackend, FakeSocket, MonotonicClock, allow_all, change, chat_row, run

ALICE = ChatIdentity(user_id="u-1", username="alice")
MOD = ChatIdentity(user_id="mod-1", username="moddy")


def _backend(rows=None):
    backend = FakeBackend(
        {
            "stream_chat": rows or [],
            "streams": [{"id": "s-1", "user_id": "owner-1"}, {"id": "s-2", "user_id": "owner-2"}],
            "stream_moderators": [{"id": "g-1", "stream_id": "s-1", "moderator_id": MOD.user_id}],
            "profiles": [
                {"id": "u-1", "username": "alice"},
                {"id": "u-2", "username": "bob"},
                {"id": MOD.user_id, "username": "moddy"},
            ],
        }
    )
    allow_all(backend)
    return backend


def _session(config, clock, backend=None, socket=None, *, identity=ALICE, is_live=True,
             stream_id="s-1", monotonic=None):
    backend = backend or _backend()
    cooldown = CooldownGate(
        policy=CooldownPolicy(duration_seconds=config.chat.cooldown_seconds),
        clock=monotonic or MonotonicClock(),
    )
    return ChatSession(
        stream_id=stream_id,
        config=config,
        backend=backend,
        socket=socket or FakeSocket(),
        identity=identity,
        is_live=is_live,
        clock=clock,
        gate=SendGate(backend, config.chat, clock=clock, cooldown=cooldown),
    )


async def _until(predicate, attempts=50):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------

def test_start_loads_history_and_subscribes(config, clock):
    rows = [chat_row("m1", offset=1, username="alice"), chat_row("m2", offset=2, username="bob")]
    socket = FakeSocket()
    session = _session(config, clock, _backend(rows), socket)

    state = run(session.start())

    assert state == ChatState.IDLE
    assert session.status.history == [ChatState.DISCONNECTED, ChatState.LOADING_HISTORY]
    assert [m.id for m in session.messages] == ["m1", "m2"]
    assert set(socket.topics) == {
        "realtime:stream_chat:s-1",
        "realtime:chat_timeouts:s-1",
        "realtime:stream_presence:s-1",
    }
    assert session.generation == 1


def test_history_failure_enters_error_and_retry_recovers(config, clock):
    backend = _backend([chat_row("m1", offset=1)])
    backend.failures[("select", "stream_chat")] = BackendUnavailable("offline")
    session = _session(config, clock, backend)

    assert run(session.start()) == ChatState.ERROR
    assert session.status.error == "Failed to load chat messages"

    del backend.failures[("select", "stream_chat")]
    assert run(session.retry()) == ChatState.IDLE
    assert session.status.error is None
    assert [m.id for m in session.messages] == ["m1"]


def test_retry_outside_error_is_ignored(config, clock):
    session = _session(config, clock)
    assert run(session.retry()) == ChatState.DISCONNECTED


def test_state_machine_rejects_invalid_transitions(config, clock):
    session = _session(config, clock)
    with pytest.raises(InvalidTransition):
        session.status.transition(ChatState.SENDING)


def test_stop_unsubscribes_everything(config, clock):
    socket = FakeSocket()
    session = _session(config, clock, socket=socket)

    async def scenario():
        await session.start()
        await session.stop()

    run(scenario())

    assert session.state == ChatState.DISCONNECTED
    assert socket.topics == []
    assert session.messages == []
    assert session.generation == 2


def test_events_after_stop_are_discarded(config, clock):
    socket = FakeSocket()
    session = _session(config, clock, socket=socket)

    async def scenario():
        await session.start()
        channel = socket.get("stream_chat:s-1")
        store = session.store
        await session.stop()
        await channel.dispatch(
            {"topic": channel.topic, "event": "postgres_changes", "payload": change("INSERT", chat_row("late", offset=5))}
        )
        await store.handle_change(change("INSERT", chat_row("late", offset=5)))
        return store

    store = run(scenario())
    assert store.messages == []
    assert session.messages == []


def test_history_completing_after_stop_is_discarded(config, clock):
    backend = _backend([chat_row("m1", offset=1)])
    session = _session(config, clock, backend)

    async def scenario():
        gate = asyncio.Event()
        backend.gates[("select", "stream_chat")] = gate
        task = asyncio.ensure_future(session.start())
        await _until(lambda: backend.count("select", "stream_chat") == 1)
        await session.stop()
        gate.set()
        return await task

    assert run(scenario()) == ChatState.DISCONNECTED
    assert session.messages == []


def test_switch_stream_unsubscribes_before_subscribing(config, clock):
    rows = [chat_row("a1", offset=1), chat_row("b1", offset=1, stream_id="s-2")]
    socket = FakeSocket()
    session = _session(config, clock, _backend(rows), socket)

    async def scenario():
        await session.start()
        await session.switch_stream("s-2")

    run(scenario())

    assert session.stream_id == "s-2"
    assert session.state == ChatState.IDLE
    assert [m.id for m in session.messages] == ["b1"]
    assert socket.events.index(("remove", "stream_chat:s-1")) < socket.events.index(("add", "stream_chat:s-2"))
    assert all(":s-1" not in topic for topic in socket.topics)


def test_anonymous_viewer_joins_presence_with_generated_key(config, clock):
    socket = FakeSocket()
    session = _session(config, clock, socket=socket, identity=None)

    run(session.start())

    presence = socket.get("stream_presence:s-1")
    assert presence.presence_key.startswith("anon-")
    assert session.state == ChatState.IDLE


def test_close_releases_backend(config, clock):
    backend = _backend()
    session = _session(config, clock, backend)

    async def scenario():
        await session.start()
        await session.close()

    run(scenario())
    assert backend.closed
    assert session.state == ChatState.DISCONNECTED


# ----------------------------------------------------------------------
# Sending
# ----------------------------------------------------------------------

def _started(config, clock, **kwargs):
    session = _session(config, clock, **kwargs)
    run(session.start())
    return session


def test_send_persists_message(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend)

    assert run(session.send("  hello world  ")) is True

    assert backend.rows("stream_chat") == [
        {
            "id": "stream_chat-1",
            "stream_id": "s-1",
            "user_id": "u-1",
            "message": "hello world",
            "is_command": False,
            "command_type": None,
        }
    ]
    assert session.state == ChatState.IDLE
    assert ChatState.SENDING in session.status.history


def test_send_uses_filtered_text(config, clock):
    backend = _backend()
    backend.rpc_results["filter_chat_message"] = [
        {"filtered_message": "nice ****", "is_blocked": False, "filter_matched": "word"}
    ]
    session = _started(config, clock, backend=backend)

    run(session.send("nice word"))

    assert backend.rows("stream_chat")[0]["message"] == "nice ****"


def test_send_requires_identity(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend, identity=None)

    assert run(session.send("hello")) is False
    assert session.notifier.texts("error") == ["You must be logged in to chat"]
    assert backend.count("insert", "stream_chat") == 0


def test_send_while_offline_is_rejected(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend, is_live=False)

    assert run(session.send("hello")) is False
    assert session.notifier.texts("error") == ["Chat is disabled while stream is offline"]
    assert backend.count("insert", "stream_chat") == 0


def test_empty_and_oversized_messages_are_not_sent(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend)

    assert run(session.send("   ")) is False
    assert run(session.send("x" * 501)) is False
    assert session.notifier.texts("error") == ["Messages are limited to 500 characters"]
    assert backend.count("insert", "stream_chat") == 0
    assert session.state == ChatState.IDLE


def test_send_before_start_is_ignored(config, clock):
    backend = _backend()
    session = _session(config, clock, backend)

    assert run(session.send("hello")) is False
    assert backend.count("insert", "stream_chat") == 0


def test_command_input_is_never_persisted(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend)

    assert run(session.send("/timeout user123 300")) is True

    assert backend.count("insert", "stream_chat") == 0
    assert session.notifier.texts("error") == ["You do not have permission to use this command"]
    assert session.state == ChatState.IDLE


def test_timed_out_user_cannot_send(config, clock):
    backend = _backend()
    expires_at = format_timestamp(clock() + timedelta(seconds=120))
    backend.tables["chat_timeouts"] = [
        {"stream_id": "s-1", "user_id": "u-1", "moderator_id": "mod-1", "expires_at": expires_at}
    ]
    session = _started(config, clock, backend=backend)

    assert run(session.send("hello")) is False
    assert session.notifier.texts("error") == ["You are timed out for 120 more seconds"]
    assert session.timed_out_until() is not None
    assert backend.count("insert", "stream_chat") == 0


def test_rate_limited_send_starts_cooldown(config, clock):
    backend = _backend()
    backend.rpc_results["check_chat_rate_limit"] = False
    monotonic = MonotonicClock()
    session = _started(config, clock, backend=backend, monotonic=monotonic)

    assert run(session.send("hello")) is False
    assert session.cooldown_remaining() == 10
    assert session.notifier.texts("error") == [
        "You are sending messages too quickly. Try again in 10 seconds"
    ]

    monotonic.advance(10)
    assert session.cooldown_remaining() == 0


def test_backend_failure_on_insert_is_notified(config, clock):
    backend = _backend()
    backend.failures[("insert", "stream_chat")] = BackendUnavailable("down")
    session = _started(config, clock, backend=backend)

    assert run(session.send("hello")) is False
    assert session.notifier.texts("error") == ["Failed to send message"]
    assert session.state == ChatState.IDLE


def test_permission_failure_on_insert_is_notified(config, clock):
    backend = _backend()
    backend.failures[("insert", "stream_chat")] = PermissionDenied("JWT expired", status_code=401)
    session = _started(config, clock, backend=backend)

    assert run(session.send("hello")) is False
    assert session.notifier.texts("error") == ["You do not have permission to chat here"]


def test_send_completing_after_stop_does_not_revive_session(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend)

    async def scenario():
        gate = asyncio.Event()
        backend.gates[("rpc", "check_chat_rate_limit")] = gate
        task = asyncio.ensure_future(session.send("hello"))
        await _until(lambda: backend.count("rpc", "check_chat_rate_limit") == 1)
        await session.stop()
        gate.set()
        return await task

    assert run(scenario()) is False
    assert session.state == ChatState.DISCONNECTED
    assert backend.count("insert", "stream_chat") == 0


# ----------------------------------------------------------------------
# Moderation
# ----------------------------------------------------------------------

def test_moderator_role_is_resolved_on_start(config, clock):
    assert _started(config, clock, identity=MOD).is_moderator
    assert not _started(config, clock, identity=ALICE).is_moderator


def test_moderator_timeout_from_message_menu(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend, identity=MOD)

    assert run(session.timeout_user("u-2", 600)) is True

    row = backend.rows("chat_timeouts")[0]
    assert row["user_id"] == "u-2"
    assert row["moderator_id"] == MOD.user_id
    assert session.notifier.texts("success") == ["User timed out for 600 seconds"]


def test_non_moderator_ban_is_refused(config, clock):
    backend = _backend()
    session = _started(config, clock, backend=backend)

    assert run(session.ban_user("u-2")) is False
    assert backend.rows("chat_timeouts") == []
    assert session.notifier.texts("error") == ["You do not have permission to moderate this chat"]


def test_author_can_delete_own_message(config, clock):
    backend = _backend([chat_row("m1", offset=1, user_id="u-1")])
    session = _started(config, clock, backend=backend)

    assert run(session.delete_message("m1")) is True
    assert backend.rows("stream_chat")[0]["is_deleted"] is True


def test_timeout_events_gate_the_targeted_user(config, clock):
    socket = FakeSocket()
    session = _started(config, clock, socket=socket)
    expires_at = format_timestamp(clock() + timedelta(seconds=60))

    run(
        socket.emit(
            "chat_timeouts:s-1",
            "postgres_changes",
            change(
                "INSERT",
                {"stream_id": "s-1", "user_id": "u-1", "moderator_id": "mod-1", "expires_at": expires_at},
                table="chat_timeouts",
            ),
        )
    )

    assert session.timed_out_until() is not None
    assert session.notifier.texts("error") == ["You have been timed out by a moderator"]

    clock.advance(60)
    assert session.timed_out_until() is None

from services.chat.notifications import Notifier
from shared.runtime.chat_state import ChatSessionStatus, ChatState
from shared.runtime.cooldown import CooldownGate, CooldownPolicy

from conftest import MonotonicClock


def test_notifier_keeps_bounded_history_and_calls_listeners():
    notifier = Notifier(history=2)
    seen = []
    unsubscribe = notifier.subscribe(lambda notice: seen.append(notice.text))

    notifier.info("one")
    notifier.success("two")
    unsubscribe()
    notifier.error("three")

    assert seen == ["one", "two"]
    assert notifier.texts() == ["two", "three"]
    assert notifier.texts("error") == ["three"]


def test_failing_listener_does_not_block_others():
    notifier = Notifier()
    seen = []

    def broken(notice):
        raise RuntimeError("boom")

    notifier.subscribe(broken)
    notifier.subscribe(lambda notice: seen.append(notice.level))
    notifier.error("x")

    assert seen == ["error"]


def test_cooldown_window_expires_on_its_own():
    clock = MonotonicClock()
    gate = CooldownGate(policy=CooldownPolicy(duration_seconds=5), clock=clock)

    assert gate.remaining("u", "s") == 0
    gate.start("u", "s")
    clock.advance(2)
    assert gate.remaining("u", "s") == 3
    assert gate.snapshot() == {"u:s": 3.0}
    clock.advance(3)
    assert not gate.is_cooling_down("u", "s")
    assert gate.snapshot() == {}


def test_disabled_cooldown_never_starts():
    gate = CooldownGate(policy=CooldownPolicy(duration_seconds=0), clock=MonotonicClock())
    assert gate.start("u", "s") is None
    assert not gate.is_cooling_down("u", "s")


def test_session_status_records_transitions():
    status = ChatSessionStatus(stream_id="s-1")

    status.transition(ChatState.LOADING_HISTORY)
    status.transition(ChatState.ERROR, error="Failed to load chat messages")
    assert status.to_dict() == {
        "stream_id": "s-1",
        "state": "error",
        "error": "Failed to load chat messages",
        "generation": 0,
    }

    status.transition(ChatState.LOADING_HISTORY)
    status.transition(ChatState.IDLE)
    assert status.error is None
    assert status.state.subscribed
    assert status.history == [
        ChatState.DISCONNECTED,
        ChatState.LOADING_HISTORY,
        ChatState.ERROR,
        ChatState.LOADING_HISTORY,
    ]

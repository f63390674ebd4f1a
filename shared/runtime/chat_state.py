"""Per-session chat state tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


class ChatState(str, Enum):
    DISCONNECTED = "disconnected"
    LOADING_HISTORY = "loading_history"
    IDLE = "idle"
    SENDING = "sending"
    ERROR = "error"

    @property
    def subscribed(self) -> bool:
        return self in (ChatState.IDLE, ChatState.SENDING)


_TRANSITIONS: Dict[ChatState, FrozenSet[ChatState]] = {
    ChatState.DISCONNECTED: frozenset({ChatState.LOADING_HISTORY}),
    ChatState.LOADING_HISTORY: frozenset(
        {ChatState.IDLE, ChatState.ERROR, ChatState.DISCONNECTED}
    ),
    ChatState.IDLE: frozenset({ChatState.SENDING, ChatState.DISCONNECTED}),
    ChatState.SENDING: frozenset({ChatState.IDLE, ChatState.DISCONNECTED}),
    ChatState.ERROR: frozenset({ChatState.LOADING_HISTORY, ChatState.DISCONNECTED}),
}


class InvalidTransition(RuntimeError):
    """Raised when a session attempts a state change the machine does not allow."""


@dataclass
class ChatSessionStatus:
    stream_id: Optional[str] = None
    state: ChatState = ChatState.DISCONNECTED
    error: Optional[str] = None
    generation: int = 0
    history: List[ChatState] = field(default_factory=list)

    def can_transition(self, target: ChatState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: ChatState, *, error: Optional[str] = None) -> ChatState:
        """Move to ``target``. Returns the previous state."""
        if target == self.state:
            return self.state
        if not self.can_transition(target):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")

        previous = self.state
        self.history.append(previous)
        self.state = target
        self.error = error if target == ChatState.ERROR else None
        return previous

    def to_dict(self) -> dict:
        return {
            "stream_id": self.stream_id,
            "state": self.state.value,
            "error": self.error,
            "generation": self.generation,
        }


__all__ = [
    "ChatSessionStatus",
    "ChatState",
    "InvalidTransition",
]

"""
Render-ready view of a chat session.

Pure functions over ChatSession state; nothing here talks to the backend.
Any surface (console, web, overlay) draws from ChatViewModel.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from shared.chat.events import ChatMessage
from shared.runtime.chat_state import ChatState

if TYPE_CHECKING:
    from core.session import ChatSession

PLACEHOLDER_OFFLINE = "Stream is offline"
PLACEHOLDER_ANONYMOUS = "Log in to chat"
PLACEHOLDER_CONNECTING = "Connecting to chat..."
PLACEHOLDER_DEFAULT = "Send a message..."


@dataclass(frozen=True)
class RowAction:
    kind: str  # timeout | ban | delete
    label: str
    duration_seconds: Optional[int] = None


@dataclass(frozen=True)
class MessageRow:
    id: str
    user_id: str
    author: str
    initial: str
    avatar_url: Optional[str]
    time: str
    text: str
    is_own: bool = False
    actions: List[RowAction] = field(default_factory=list)


@dataclass(frozen=True)
class InputState:
    enabled: bool
    placeholder: str


@dataclass(frozen=True)
class ChatViewModel:
    stream_id: str
    status: str
    rows: List[MessageRow]
    input: InputState
    viewer_count: int
    is_moderator: bool
    error: Optional[str] = None
    notices: List[str] = field(default_factory=list)
    emotes: List[str] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.status == ChatState.ERROR.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "status": self.status,
            "viewer_count": self.viewer_count,
            "is_moderator": self.is_moderator,
            "error": self.error,
            "input": {"enabled": self.input.enabled, "placeholder": self.input.placeholder},
            "rows": [
                {
                    "id": r.id,
                    "author": r.author,
                    "time": r.time,
                    "text": r.text,
                    "actions": [a.kind for a in r.actions],
                }
                for r in self.rows
            ],
            "notices": list(self.notices),
        }


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def moderator_actions(presets: List[int]) -> List[RowAction]:
    actions = [
        RowAction(kind="timeout", label=f"Timeout {format_duration(s)}", duration_seconds=s)
        for s in presets
    ]
    actions.append(RowAction(kind="ban", label="Ban"))
    actions.append(RowAction(kind="delete", label="Delete"))
    return actions


def insert_emote(draft: str, emote: str) -> str:
    """Append ``:emote:`` to the draft, separated by a single space."""
    token = f":{emote.strip(':')}:"
    if not draft:
        return token
    if draft.endswith(" "):
        return draft + token
    return f"{draft} {token}"


def build_row(
    message: ChatMessage,
    *,
    viewer_id: Optional[str],
    actions: List[RowAction],
    tz: tzinfo = timezone.utc,
) -> MessageRow:
    is_own = viewer_id is not None and message.user_id == viewer_id
    return MessageRow(
        id=message.id,
        user_id=message.user_id,
        author=message.author.username,
        initial=message.author.initial,
        avatar_url=message.author.avatar_url,
        time=message.created_at.astimezone(tz).strftime("%H:%M"),
        text=message.message,
        is_own=is_own,
        actions=[] if is_own else list(actions),
    )


def input_state(session: "ChatSession") -> InputState:
    if not session.is_live:
        return InputState(enabled=False, placeholder=PLACEHOLDER_OFFLINE)
    if session.identity is None:
        return InputState(enabled=False, placeholder=PLACEHOLDER_ANONYMOUS)

    timed_out_until = session.timed_out_until()
    if timed_out_until is not None:
        remaining = math.ceil((timed_out_until - session.now()).total_seconds())
        return InputState(
            enabled=False, placeholder=f"You are timed out for {remaining} more seconds"
        )

    cooldown = session.cooldown_remaining()
    if cooldown > 0:
        return InputState(
            enabled=False, placeholder=f"Slow down! Try again in {math.ceil(cooldown)} seconds"
        )

    if not session.state.subscribed:
        return InputState(enabled=False, placeholder=PLACEHOLDER_CONNECTING)
    return InputState(enabled=session.state == ChatState.IDLE, placeholder=PLACEHOLDER_DEFAULT)


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def build_view(
    session: "ChatSession",
    *,
    tz: tzinfo = timezone.utc,
    notice_limit: int = 5,
) -> ChatViewModel:
    viewer_id = session.identity.user_id if session.identity else None
    actions = (
        moderator_actions(session.config.chat.timeout_presets_seconds)
        if session.is_moderator
        else []
    )

    rows = [
        build_row(m, viewer_id=viewer_id, actions=actions, tz=tz) for m in session.messages
    ]
    notices = session.notifier.texts()[-notice_limit:] if notice_limit else []

    return ChatViewModel(
        stream_id=session.stream_id,
        status=session.state.value,
        rows=rows,
        input=input_state(session),
        viewer_count=session.viewer_count,
        is_moderator=session.is_moderator,
        error=session.status.error,
        notices=notices,
        emotes=list(session.config.chat.emotes),
    )

"""Chat message model and decoding of realtime change payloads."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

_FRACTION_RE = re.compile(r"\.(\d+)")


class InvalidPayload(ValueError):
    """Raised when a row or realtime payload does not have the expected shape."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> datetime:
    """
    Parse a backend timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (``Z`` or offset suffix, any fraction length),
    epoch seconds or milliseconds, and datetimes.
    """
    if value is None or value == "":
        raise InvalidPayload("timestamp is required")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = float(value)
        # ms timestamps are > 1e12
        if seconds > 1_000_000_000_000:
            seconds = seconds / 1000.0
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        if " " in text and "T" not in text:
            text = text.replace(" ", "T", 1)
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidPayload(f"invalid timestamp: {value!r}") from e
    else:
        raise InvalidPayload(f"invalid timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class AuthorProfile:
    username: str
    avatar_url: Optional[str] = None

    @property
    def initial(self) -> str:
        return self.username[:1].upper() if self.username else "?"


UNKNOWN_AUTHOR = AuthorProfile(username="Unknown")


@dataclass(frozen=True)
class ChatMessage:
    id: str
    stream_id: str
    user_id: str
    message: str
    created_at: datetime
    is_deleted: bool = False
    is_command: bool = False
    command_type: Optional[str] = None
    author: AuthorProfile = field(default=UNKNOWN_AUTHOR, compare=False)

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    def with_author(self, author: AuthorProfile) -> "ChatMessage":
        return replace(self, author=author)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "user_id": self.user_id,
            "message": self.message,
            "created_at": format_timestamp(self.created_at),
            "is_deleted": self.is_deleted,
            "is_command": self.is_command,
            "command_type": self.command_type,
            "author": {
                "username": self.author.username,
                "avatar_url": self.author.avatar_url,
            },
        }


def profile_from_row(row: Any) -> Optional[AuthorProfile]:
    if not isinstance(row, dict):
        return None
    username = row.get("username")
    if not username:
        return None
    return AuthorProfile(username=str(username), avatar_url=row.get("avatar_url"))


def message_from_row(row: Any) -> ChatMessage:
    """
    Build a ChatMessage from a ``stream_chat`` row.

    An embedded ``profiles`` object (history queries) becomes the author;
    bare rows (realtime records) get UNKNOWN_AUTHOR until resolved.
    """
    if not isinstance(row, dict):
        raise InvalidPayload("chat row must be an object")

    for key in ("id", "stream_id", "user_id"):
        if not row.get(key):
            raise InvalidPayload(f"chat row missing '{key}'")

    body = row.get("message")
    if body is None:
        # Older rows wrote the body into a content column.
        body = row.get("content")
    if not isinstance(body, str):
        raise InvalidPayload("chat row missing 'message'")

    command_type = row.get("command_type")

    return ChatMessage(
        id=str(row["id"]),
        stream_id=str(row["stream_id"]),
        user_id=str(row["user_id"]),
        message=body,
        created_at=parse_timestamp(row.get("created_at")),
        is_deleted=bool(row.get("is_deleted") or False),
        is_command=bool(row.get("is_command") or False),
        command_type=str(command_type) if command_type else None,
        author=profile_from_row(row.get("profiles")) or UNKNOWN_AUTHOR,
    )


# ------------------------------------------------------------
# Realtime change events
# ------------------------------------------------------------

@dataclass(frozen=True)
class MessageInserted:
    message: ChatMessage


@dataclass(frozen=True)
class MessageUpdated:
    message: ChatMessage
    old: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def soft_deleted(self) -> bool:
        return self.message.is_deleted


@dataclass(frozen=True)
class MessageDeleted:
    message_id: str


ChangeEvent = Union[MessageInserted, MessageUpdated, MessageDeleted]


def decode_change(payload: Any) -> ChangeEvent:
    """
    Decode a ``postgres_changes`` payload into a tagged change event.

    Accepts both the wire shape (``{"data": {"type", "record",
    "old_record"}}``) and the flattened shape (``{"eventType", "new",
    "old"}``).
    """
    if not isinstance(payload, dict):
        raise InvalidPayload("change payload must be an object")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    event_type = data.get("type") or data.get("eventType")
    record = data.get("record", data.get("new")) or {}
    old_record = data.get("old_record", data.get("old")) or {}

    if event_type == "INSERT":
        return MessageInserted(message=message_from_row(record))

    if event_type == "UPDATE":
        return MessageUpdated(message=message_from_row(record), old=dict(old_record))

    if event_type == "DELETE":
        message_id = old_record.get("id") if isinstance(old_record, dict) else None
        if not message_id:
            raise InvalidPayload("delete payload missing old_record.id")
        return MessageDeleted(message_id=str(message_id))

    raise InvalidPayload(f"unsupported change type: {event_type!r}")


__all__ = [
    "AuthorProfile",
    "ChangeEvent",
    "ChatMessage",
    "InvalidPayload",
    "MessageDeleted",
    "MessageInserted",
    "MessageUpdated",
    "UNKNOWN_AUTHOR",
    "decode_change",
    "format_timestamp",
    "message_from_row",
    "parse_timestamp",
    "profile_from_row",
    "utc_now",
]

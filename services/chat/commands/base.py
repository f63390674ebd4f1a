from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from services.chat.commands.processor import CommandServices


class CommandError(RuntimeError):
    """Raised by a command to report a user-facing failure."""


@dataclass(frozen=True)
class CommandInvocation:
    """
    A parsed prefixed chat input.

    ``name`` is lower-cased; ``raw`` keeps the full original text so remote
    procedures can re-parse it.
    """
    name: str
    args: List[str] = field(default_factory=list)
    raw: str = ""
    user_id: str = ""
    stream_id: str = ""


def parse_invocation(
    text: str,
    *,
    prefix: str,
    user_id: str = "",
    stream_id: str = "",
) -> Optional[CommandInvocation]:
    """Return None when ``text`` is not a prefixed command."""
    if not text.startswith(prefix):
        return None

    body = text[len(prefix):]
    parts = body.split()
    if not parts or body[:1].isspace():
        name = ""
        args = parts
    else:
        name, args = parts[0], parts[1:]

    return CommandInvocation(
        name=name.lower(),
        args=args,
        raw=text,
        user_id=user_id,
        stream_id=stream_id,
    )


class ChatCommand(ABC):
    """
    Base class for chat commands.

    Commands either succeed and return a confirmation line, or raise
    CommandError / a backend error. They never persist a chat row.
    """

    name: str = ""
    description: str = ""
    usage: str = ""
    moderator_only: bool = False

    @abstractmethod
    async def execute(
        self,
        invocation: CommandInvocation,
        services: "CommandServices",
    ) -> Optional[str]:
        raise NotImplementedError

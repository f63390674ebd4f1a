from __future__ import annotations

from typing import Optional

from services.chat.commands.base import ChatCommand, CommandError, CommandInvocation
from services.chat.commands.processor import CommandServices

PROCESS_COMMAND_RPC = "process_chat_command"


class TimeoutCommand(ChatCommand):
    name = "timeout"
    description = "Timeout a user for a specified duration"
    usage = "/timeout @username <seconds>"
    moderator_only = True

    async def execute(self, invocation: CommandInvocation, services: CommandServices) -> Optional[str]:
        if len(invocation.args) < 2:
            raise CommandError(f"Usage: {self.usage}")

        try:
            duration = int(invocation.args[1])
        except ValueError:
            raise CommandError("Invalid duration") from None
        if duration <= 0:
            raise CommandError("Invalid duration")

        username = invocation.args[0].lstrip("@")
        target_id = await _resolve(services, username)
        await services.moderation.timeout_user(
            invocation.stream_id, target_id, invocation.user_id, duration
        )
        return f"User {username} has been timed out for {duration} seconds"


class BanCommand(ChatCommand):
    name = "ban"
    description = "Ban a user from chat (a one-year timeout)"
    usage = "/ban @username"
    moderator_only = True

    async def execute(self, invocation: CommandInvocation, services: CommandServices) -> Optional[str]:
        if not invocation.args:
            raise CommandError(f"Usage: {self.usage}")

        username = invocation.args[0].lstrip("@")
        target_id = await _resolve(services, username)
        await services.moderation.ban_user(invocation.stream_id, target_id, invocation.user_id)
        return f"User {username} has been banned"


class ClearCommand(ChatCommand):
    name = "clear"
    description = "Clear all chat messages"
    usage = "/clear"
    moderator_only = True

    async def execute(self, invocation: CommandInvocation, services: CommandServices) -> Optional[str]:
        await services.moderation.clear_chat(invocation.stream_id, invocation.user_id)
        return "Chat has been cleared"


class RemoteCommand(ChatCommand):
    """
    Forwards the raw command text to the backend's command procedure and
    shows whatever it answers.
    """

    description = "Handled by the backend"

    def __init__(self, name: str):
        self.name = name.lower()
        self.usage = f"/{self.name}"

    async def execute(self, invocation: CommandInvocation, services: CommandServices) -> Optional[str]:
        result = await services.backend.rpc(
            PROCESS_COMMAND_RPC,
            {
                "p_message": invocation.raw,
                "p_user_id": invocation.user_id,
                "p_stream_id": invocation.stream_id,
            },
        )
        return str(result) if result else None


async def _resolve(services: CommandServices, username: str) -> str:
    try:
        return await services.moderation.resolve_username(username)
    except ValueError as e:
        raise CommandError(str(e)) from None


def builtin_commands():
    return [TimeoutCommand(), BanCommand(), ClearCommand()]

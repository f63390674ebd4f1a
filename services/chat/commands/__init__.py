from services.chat.commands.base import ChatCommand, CommandError, CommandInvocation, parse_invocation
from services.chat.commands.processor import CommandProcessor, CommandServices
from services.chat.commands.registry import CommandRegistry
from services.chat.commands.builtin import (
    BanCommand,
    ClearCommand,
    RemoteCommand,
    TimeoutCommand,
    builtin_commands,
)


def default_registry(remote_commands=()) -> CommandRegistry:
    registry = CommandRegistry()
    for command in builtin_commands():
        registry.register(command)
    for name in remote_commands:
        if name not in registry:
            registry.register(RemoteCommand(name))
    return registry


__all__ = [
    "BanCommand",
    "ChatCommand",
    "ClearCommand",
    "CommandError",
    "CommandInvocation",
    "CommandProcessor",
    "CommandRegistry",
    "CommandServices",
    "RemoteCommand",
    "TimeoutCommand",
    "builtin_commands",
    "default_registry",
    "parse_invocation",
]

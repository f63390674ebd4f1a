from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.config_loader import ChatBehaviourConfig
from services.backend.client import BackendClient
from services.backend.errors import BackendError
from services.chat.commands.base import CommandError, parse_invocation
from services.chat.commands.registry import CommandRegistry
from services.chat.notifications import Notifier
from shared.logging.logger import get_logger

if TYPE_CHECKING:
    from services.chat.moderation import ModerationService

log = get_logger("chat.commands.processor")


@dataclass
class CommandServices:
    backend: BackendClient
    moderation: "ModerationService"
    config: ChatBehaviourConfig


class CommandProcessor:
    """
    Intercepts prefixed chat input and runs it as a command.

    Every prefixed input counts as handled, whether the command is known,
    denied, or fails, so it is never persisted as a chat message. Outcomes
    are reported through the notifier only.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        services: CommandServices,
        notifier: Notifier,
    ):
        self.registry = registry
        self.services = services
        self.notifier = notifier

    @property
    def prefix(self) -> str:
        return self.services.config.command_prefix

    def is_command(self, text: str) -> bool:
        return text.startswith(self.prefix)

    async def process(self, text: str, user_id: str, stream_id: str) -> bool:
        invocation = parse_invocation(
            text, prefix=self.prefix, user_id=user_id, stream_id=stream_id
        )
        if invocation is None:
            return False

        command = self.registry.get(invocation.name) if invocation.name else None
        if command is None:
            log.info(f"[{stream_id}] unknown command '{invocation.name}' from {user_id}")
            self.notifier.error("Unknown command")
            return True

        try:
            if command.moderator_only:
                allowed = await self.services.moderation.is_moderator(stream_id, user_id)
                if not allowed:
                    self.notifier.error("You do not have permission to use this command")
                    return True

            log.info(f"[{stream_id}] {user_id} executing /{command.name} {invocation.args}")
            confirmation = await command.execute(invocation, self.services)
        except CommandError as e:
            self.notifier.error(str(e))
        except BackendError as e:
            log.warning(f"[{stream_id}] /{command.name} failed: {e}")
            self.notifier.error(str(e) or "Failed to execute command")
        except Exception as e:
            log.warning(f"[{stream_id}] /{command.name} raised unexpectedly: {e}")
            self.notifier.error("Failed to execute command")
        else:
            if confirmation:
                self.notifier.success(confirmation)

        return True

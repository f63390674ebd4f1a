from typing import Dict, List, Optional

from services.chat.commands.base import ChatCommand
from shared.logging.logger import get_logger

log = get_logger("chat.commands.registry")


class CommandRegistry:
    """
    Holds the chat commands available to a session, keyed by lower-case name.
    """

    def __init__(self):
        self._commands: Dict[str, ChatCommand] = {}

    # ------------------------------------------------------------

    def register(self, command: ChatCommand) -> None:
        """
        Register a command instance. A later registration replaces an
        earlier one with the same name.
        """
        name = command.name.lower()
        if not name:
            raise ValueError("command name is required")
        if name in self._commands:
            log.debug(f"Replacing chat command: {name}")
        else:
            log.debug(f"Registering chat command: {name}")
        self._commands[name] = command

    # ------------------------------------------------------------

    def get(self, name: str) -> Optional[ChatCommand]:
        return self._commands.get(name.lower())

    def names(self) -> List[str]:
        return sorted(self._commands)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._commands

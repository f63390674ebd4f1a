from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, List

from shared.logging.logger import get_logger

log = get_logger("chat.notifications")


@dataclass(frozen=True)
class Notice:
    level: str  # info | success | error
    text: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier:
    """
    Transient user-facing notices (toasts).

    Best-effort: listeners that raise are logged and skipped; nothing is
    persisted beyond a short in-memory history.
    """

    def __init__(self, *, history: int = 20):
        self._recent: Deque[Notice] = deque(maxlen=history)
        self._listeners: List[Callable[[Notice], None]] = []

    def subscribe(self, listener: Callable[[Notice], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------

    def info(self, text: str) -> Notice:
        return self._emit("info", text)

    def success(self, text: str) -> Notice:
        return self._emit("success", text)

    def error(self, text: str) -> Notice:
        return self._emit("error", text)

    def _emit(self, level: str, text: str) -> Notice:
        notice = Notice(level=level, text=text)
        self._recent.append(notice)
        log.debug(f"notice[{level}] {text}")

        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception as e:
                log.warning(f"Notification listener error ignored: {e}")
        return notice

    # ------------------------------------------------------------

    @property
    def recent(self) -> List[Notice]:
        return list(self._recent)

    def texts(self, level: str = "") -> List[str]:
        return [n.text for n in self._recent if not level or n.level == level]

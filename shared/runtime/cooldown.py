from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


# ======================================================================
# Data Models
# ======================================================================

@dataclass
class CooldownPolicy:
    """
    Declarative cooldown length applied after a server rate-limit rejection.
    """
    duration_seconds: float

    @property
    def active(self) -> bool:
        return self.duration_seconds > 0


@dataclass
class CooldownWindow:
    """
    A single running cooldown, in monotonic clock seconds.
    """
    started_at: float
    ends_at: float

    def remaining(self, now: float) -> float:
        return max(0.0, self.ends_at - now)


# ======================================================================
# Cooldown Gate (LOCAL POLICY ONLY)
# ======================================================================

class CooldownGate:
    """
    Client-side send cooldown keyed by (user_id, stream_id).

    - Started only after the server rejects a send for rate limiting
    - Fixed duration; a new rejection restarts the window
    - Expires on its own; no server calls are needed to release it
    """

    def __init__(
        self,
        *,
        policy: CooldownPolicy,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.policy = policy
        self._clock = clock or time.monotonic
        self._windows: Dict[str, CooldownWindow] = {}

    def _key(self, user_id: str, stream_id: str) -> str:
        return f"{user_id}:{stream_id}"

    # --------------------------------------------------

    def start(self, user_id: str, stream_id: str) -> Optional[CooldownWindow]:
        if not self.policy.active:
            return None
        now = self._clock()
        window = CooldownWindow(started_at=now, ends_at=now + self.policy.duration_seconds)
        self._windows[self._key(user_id, stream_id)] = window
        return window

    def remaining(self, user_id: str, stream_id: str) -> float:
        key = self._key(user_id, stream_id)
        window = self._windows.get(key)
        if window is None:
            return 0.0

        left = window.remaining(self._clock())
        if left <= 0:
            self._windows.pop(key, None)
        return left

    def is_cooling_down(self, user_id: str, stream_id: str) -> bool:
        return self.remaining(user_id, stream_id) > 0

    def clear(self, user_id: str, stream_id: str) -> None:
        self._windows.pop(self._key(user_id, stream_id), None)

    # --------------------------------------------------

    def snapshot(self) -> Dict[str, float]:
        now = self._clock()
        return {
            key: round(window.remaining(now), 3)
            for key, window in self._windows.items()
            if window.remaining(now) > 0
        }

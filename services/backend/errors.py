from typing import Optional


class BackendError(RuntimeError):
    """Raised when a backend request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendUnavailable(BackendError):
    """Network failure or 5xx. Retryable by explicit user action."""


class PermissionDenied(BackendError):
    """Unauthenticated or forbidden. Never retried."""


class NotFound(BackendError):
    """A single-row query matched nothing."""

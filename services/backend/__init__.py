from services.backend.client import NOT_TRUE, BackendClient
from services.backend.errors import BackendError, BackendUnavailable, NotFound, PermissionDenied

__all__ = ["BackendClient", "BackendError", "BackendUnavailable", "NOT_TRUE", "NotFound", "PermissionDenied"]

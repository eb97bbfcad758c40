from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base for errors that map onto an HTTP response."""
    status_code = 500

    def __init__(self, message: str, *,
                 headers: Optional[Dict[str, str]] = None,
                 **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, **self.extra}


class BadRequest(ServiceError):
    status_code = 400


class Unauthorized(ServiceError):
    status_code = 401


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class DuplicateKey(Conflict):
    """A unique key (short id, device id, session id) already exists."""


class Internal(ServiceError):
    status_code = 500


class Unavailable(ServiceError):
    status_code = 503


class ProviderError(Exception):
    """Communication with the payment provider failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status

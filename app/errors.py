"""Domain errors raised by the request engine.

Routers translate these into HTTPException with the error's status code and
a {"error": code, "message": ...} detail. Conflicts (already_requested /
already_exists) are NOT errors; they come back as OperationOutcome.CONFLICT.
"""

from typing import Optional


class RequestEngineError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "error"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message}


class RequestValidationError(RequestEngineError):
    """Malformed input: rejected before any side effect."""

    code = "invalid_request"
    status_code = 400


class NotificationsRequiredError(RequestEngineError):
    """Requester has no notification endpoint and the deployment requires one."""

    code = "notifications_required"
    status_code = 403

    def __init__(self, message: str = "Requesting blocked until notifications are applied"):
        super().__init__(message)


class RequestNotFoundError(RequestEngineError):
    code = "not_found"
    status_code = 404


class RuleNotFoundError(RequestEngineError):
    code = "rule_not_found"
    status_code = 404


class InvalidTransitionError(RequestEngineError):
    """Requested status change is not allowed from the current status."""

    code = "invalid_transition"
    status_code = 409


class ExternalServiceError(RequestEngineError):
    """A write path needed an external service that failed."""

    code = "service_unavailable"
    status_code = 502


class ServiceUnavailableError(Exception):
    """External service could not be reached (network error, timeout, 5xx)."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message


class ServiceRequestError(Exception):
    """External service rejected a request (4xx)."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message
        self.status_code = status_code

    @property
    def is_already_exists(self) -> bool:
        """Radarr/Sonarr report duplicates as validation errors with these phrases."""
        lowered = self.message.lower()
        return any(p in lowered for p in ("already been added", "already exists", "already in"))

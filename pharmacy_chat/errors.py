from typing import Any, Optional


class ValidationError(Exception):
    """Bad or missing caller input; surfaced as HTTP 400."""


class RemoteApiError(Exception):
    """Non-2xx response or transport failure from the assistant API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OrchestrationError(Exception):
    """A run could not be driven to a usable terminal state."""


class RunDeadlineExceeded(OrchestrationError):
    pass


class RunCancelled(OrchestrationError):
    pass

"""
Error codes and exception hierarchy for the A2A protocol.

Every exception carries a stable `code` that ends up in the
`ServiceResponse.error.code` field on the wire.
"""
from typing import Any, Optional


class ErrorCode:
    TOKEN_NOT_CONFIGURED = "TOKEN_NOT_CONFIGURED"
    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    TASK_RESULT_NOT_FOUND = "TASK_RESULT_NOT_FOUND"
    INVALID_JSON = "INVALID_JSON"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    ORIGIN_NOT_ALLOWED = "ORIGIN_NOT_ALLOWED"
    # Client-side only
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"


class A2AError(Exception):
    """Base class for protocol errors rendered into the ServiceResponse envelope."""

    status_code = 500
    code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        err: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            err["details"] = self.details
        return err


class ValidationError(A2AError):
    """Malformed input, oversized filters or an illegal task state transition."""

    status_code = 400
    code = ErrorCode.VALIDATION_ERROR


class TaskNotFoundError(A2AError):
    status_code = 404
    code = ErrorCode.TASK_NOT_FOUND

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class AuthError(A2AError):
    status_code = 401
    code = ErrorCode.AUTH_INVALID


class RateLimitExceeded(A2AError):
    """Raised when an (agent, endpoint) bucket has no tokens left."""

    status_code = 429
    code = ErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, limit: int, retry_after: int, agent_id: str, endpoint: str) -> None:
        self.limit = limit
        self.retry_after = retry_after
        self.agent_id = agent_id
        self.endpoint = endpoint
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds.")

    def to_dict(self) -> dict[str, Any]:
        err = super().to_dict()
        err["retryAfter"] = self.retry_after
        return err


class ConfigurationError(Exception):
    """Inconsistent configuration detected at startup."""


class A2AClientError(Exception):
    """Failure surfaced by A2AClient, built from the remote error envelope when there is one."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.retry_after = retry_after
        super().__init__(f"[{code}] {message}")

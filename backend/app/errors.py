"""Error taxonomy shared by the API, services and provider adapters.

Every failure surfaced to a caller carries an ErrorCode. The code decides the
HTTP status, whether the caller may retry, and the default user-facing message.
"""

from enum import Enum
from typing import Any, NamedTuple


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    AUTH_MISSING = "AUTH_MISSING"
    AUTH_INVALID = "AUTH_INVALID"
    CONFIG_ERROR = "CONFIG_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PROMPT_NOT_FOUND = "PROMPT_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    RETRYABLE_CONFLICT = "RETRYABLE_CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    API_CALL_FAILED = "API_CALL_FAILED"
    OPENAI_API_ERROR = "OPENAI_API_ERROR"
    OPENAI_NOT_CONFIGURED = "OPENAI_NOT_CONFIGURED"
    NO_MESSAGE_CONTENT = "NO_MESSAGE_CONTENT"
    NOT_CANCELLABLE = "NOT_CANCELLABLE"
    CANCEL_FAILED = "CANCEL_FAILED"
    CANCELLED = "CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorMeta(NamedTuple):
    http_status: int
    recoverable: bool
    user_message: str


ERROR_METADATA: dict[ErrorCode, ErrorMeta] = {
    ErrorCode.AUTH_MISSING: ErrorMeta(401, False, "Please sign in to continue."),
    ErrorCode.AUTH_INVALID: ErrorMeta(401, False, "Your session has expired. Please sign in again."),
    ErrorCode.CONFIG_ERROR: ErrorMeta(500, False, "Server configuration error."),
    ErrorCode.MISSING_FIELD: ErrorMeta(400, False, "A required field is missing."),
    ErrorCode.VALIDATION_ERROR: ErrorMeta(400, False, "The request is invalid."),
    ErrorCode.NOT_FOUND: ErrorMeta(404, False, "The requested item was not found."),
    ErrorCode.PROMPT_NOT_FOUND: ErrorMeta(404, False, "The prompt was not found."),
    ErrorCode.INVALID_STATE: ErrorMeta(409, False, "The item is not in a state that allows this change."),
    ErrorCode.RETRYABLE_CONFLICT: ErrorMeta(
        409, True, "Another execution is already running for this prompt."
    ),
    ErrorCode.RATE_LIMITED: ErrorMeta(429, True, "Too many requests. Please wait and try again."),
    ErrorCode.TIMEOUT: ErrorMeta(504, True, "The request timed out."),
    ErrorCode.API_CALL_FAILED: ErrorMeta(502, True, "The AI provider returned an error."),
    ErrorCode.OPENAI_API_ERROR: ErrorMeta(502, True, "OpenAI returned an error."),
    ErrorCode.OPENAI_NOT_CONFIGURED: ErrorMeta(400, False, "OpenAI API key is not configured."),
    ErrorCode.NO_MESSAGE_CONTENT: ErrorMeta(400, False, "There is no message content to send."),
    ErrorCode.NOT_CANCELLABLE: ErrorMeta(400, False, "This response can no longer be cancelled."),
    ErrorCode.CANCEL_FAILED: ErrorMeta(500, True, "Failed to cancel the response."),
    ErrorCode.CANCELLED: ErrorMeta(499, False, "The request was cancelled."),
    ErrorCode.INTERNAL_ERROR: ErrorMeta(500, True, "An unexpected error occurred."),
}


def get_error_meta(code: ErrorCode) -> ErrorMeta:
    """Get metadata for an error code, defaulting to INTERNAL_ERROR."""
    return ERROR_METADATA.get(code, ERROR_METADATA[ErrorCode.INTERNAL_ERROR])


class WorkbenchError(Exception):
    """Base exception for workbench errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: Any = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details
        self.retry_after = retry_after

    @property
    def http_status(self) -> int:
        return get_error_meta(self.code).http_status

    @property
    def recoverable(self) -> bool:
        return get_error_meta(self.code).recoverable

    def to_dict(self) -> dict[str, Any]:
        """Build the JSON error body returned to clients."""
        body: dict[str, Any] = {
            "error": self.message,
            "error_code": self.code.value,
            "recoverable": self.recoverable,
        }
        if self.details is not None:
            body["details"] = self.details
        if self.retry_after is not None:
            body["retry_after_s"] = self.retry_after
        return body


class AuthError(WorkbenchError):
    """Caller identity missing or invalid."""

    code = ErrorCode.AUTH_MISSING


class ValidationFailed(WorkbenchError):
    """Request payload failed validation."""

    code = ErrorCode.VALIDATION_ERROR


class NotFoundError(WorkbenchError):
    """Record not found, or not owned by the caller."""

    code = ErrorCode.NOT_FOUND


class ConflictError(WorkbenchError):
    """Another execution holds the per-prompt mutex."""

    code = ErrorCode.RETRYABLE_CONFLICT


class InvalidStateError(WorkbenchError):
    """Transition not allowed from the record's current status."""

    code = ErrorCode.INVALID_STATE


class RateLimitError(WorkbenchError):
    """Rate limit exceeded."""

    code = ErrorCode.RATE_LIMITED


class ConfigError(WorkbenchError):
    """Missing provider key or server configuration."""

    code = ErrorCode.CONFIG_ERROR


class ProviderError(WorkbenchError):
    """External LLM provider call failed."""

    code = ErrorCode.API_CALL_FAILED

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code

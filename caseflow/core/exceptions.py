"""Custom exception hierarchy."""

from enum import Enum
from typing import Any, Dict, Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class ModelCallErrorKind(str, Enum):
    """Failure categories reported by the model call client."""

    CONFIG_ERROR = "config_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_ERROR = "transient_error"
    API_ERROR = "api_error"
    NETWORK_ERROR = "network_error"
    RETRIES_EXHAUSTED = "retries_exhausted"


RETRYABLE_KINDS = frozenset({
    ModelCallErrorKind.TIMEOUT,
    ModelCallErrorKind.RATE_LIMITED,
    ModelCallErrorKind.TRANSIENT_ERROR,
    ModelCallErrorKind.NETWORK_ERROR,
})


class ModelCallError(APIClientError):
    """Raised when a call to the external model fails.

    ``is_retryable`` tells callers whether the same call is likely to
    succeed later. It does not mean the client will retry it itself.
    """

    def __init__(
        self,
        message: str,
        kind: ModelCallErrorKind,
        status_code: Optional[int] = None,
        original_error: Exception = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, original_error)
        self.kind = ModelCallErrorKind(kind)
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds

    @property
    def is_retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "statusCode": self.status_code,
            "isRetryable": self.is_retryable,
        }


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass


class PipelineError(AppError):
    """Base exception for pipeline errors."""
    pass


class StageError(PipelineError):
    """Raised by a stage handler when its stage cannot complete."""

    def __init__(self, stage: str, message: str, original_error: Exception = None):
        super().__init__(message, original_error)
        self.stage = stage


class PipelineRunNotFoundError(PipelineError):
    """Raised when a pipeline run does not exist for the tenant."""
    pass


class InvalidRunTransitionError(PipelineError):
    """Raised when a run is asked to move to a state it cannot reach."""
    pass


class FindingNotFoundError(AppError):
    """Raised when a finding does not exist for the tenant."""
    pass


class FindingResolutionError(AppError):
    """Raised when a finding cannot take the requested resolution."""
    pass


class DocumentNotFoundError(AppError):
    """Raised when a document is not found."""
    pass

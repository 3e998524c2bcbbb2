"""Custom exception hierarchy."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error categories surfaced at the service boundary."""

    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    EXTRACTION_TIMEOUT = "extraction_timeout"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    INTERNAL_ERROR = "internal_error"


class AppError(Exception):
    """Base exception for application errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        original_error: Exception = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details = details or {}


class NotFoundError(AppError):
    """Raised when no canonical fact exists; the caller must ask the user."""

    kind = ErrorKind.NOT_FOUND


class ValidationError(AppError):
    """Raised when input validation fails."""

    kind = ErrorKind.VALIDATION_ERROR


class ExtractionTimeoutError(AppError):
    """Raised when the LLM extraction fallback exceeds its time limit."""

    kind = ErrorKind.EXTRACTION_TIMEOUT


class ConflictUnresolvedError(AppError):
    """Raised when a fact has contradictory high-confidence values pending review."""

    kind = ErrorKind.CONFLICT_UNRESOLVED


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    pass



class ConfigurationError(AppError):
    """Raised when configuration is invalid or missing."""
    pass

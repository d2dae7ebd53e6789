"""
Nudge Repository Errors

Typed error kinds raised by the repository layer. Every error carries its
NudgeErrorType so the error handler can pick a log level and decide whether
the failure is worth reporting to Sentry.
"""

from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class NudgeErrorSeverity(IntEnum):
    """Severity levels, ordered so they can be compared."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class NudgeErrorType(str, Enum):
    """Categories of repository failures."""

    AUTHENTICATION_ERROR = "authentication_error"
    VALIDATION_ERROR = "validation_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    DATA_FETCH_ERROR = "data_fetch_error"
    DATA_WRITE_ERROR = "data_write_error"
    TRANSACTION_ERROR = "transaction_error"
    STREAM_ERROR = "stream_error"
    CACHE_ERROR = "cache_error"
    RESOURCE_ERROR = "resource_error"

    @property
    def severity(self) -> NudgeErrorSeverity:
        return _SEVERITIES[self]

    @property
    def should_report(self) -> bool:
        """Medium severity and above goes to error tracking."""
        return self.severity >= NudgeErrorSeverity.MEDIUM


_SEVERITIES = {
    NudgeErrorType.AUTHENTICATION_ERROR: NudgeErrorSeverity.HIGH,
    NudgeErrorType.VALIDATION_ERROR: NudgeErrorSeverity.LOW,
    NudgeErrorType.RATE_LIMIT_EXCEEDED: NudgeErrorSeverity.LOW,
    NudgeErrorType.DATA_FETCH_ERROR: NudgeErrorSeverity.MEDIUM,
    NudgeErrorType.DATA_WRITE_ERROR: NudgeErrorSeverity.HIGH,
    NudgeErrorType.TRANSACTION_ERROR: NudgeErrorSeverity.HIGH,
    NudgeErrorType.STREAM_ERROR: NudgeErrorSeverity.MEDIUM,
    NudgeErrorType.CACHE_ERROR: NudgeErrorSeverity.LOW,
    NudgeErrorType.RESOURCE_ERROR: NudgeErrorSeverity.LOW,
}


class NudgeRepositoryError(Exception):
    """Base class for all repository errors."""

    error_type: NudgeErrorType = NudgeErrorType.DATA_FETCH_ERROR

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.message}: {self.original_error}"
        return self.message


class AuthenticationError(NudgeRepositoryError):
    """Raised when no user is signed in."""

    error_type = NudgeErrorType.AUTHENTICATION_ERROR


class NudgeValidationError(NudgeRepositoryError):
    """Raised for empty content on create or a missing id on update."""

    error_type = NudgeErrorType.VALIDATION_ERROR


class RateLimitExceeded(NudgeRepositoryError):
    """Raised when an operation exceeds its per-minute request budget."""

    error_type = NudgeErrorType.RATE_LIMIT_EXCEEDED


class DataFetchError(NudgeRepositoryError):
    error_type = NudgeErrorType.DATA_FETCH_ERROR


class DataWriteError(NudgeRepositoryError):
    error_type = NudgeErrorType.DATA_WRITE_ERROR


class TransactionError(NudgeRepositoryError):
    error_type = NudgeErrorType.TRANSACTION_ERROR


class StreamError(NudgeRepositoryError):
    error_type = NudgeErrorType.STREAM_ERROR


class CacheError(NudgeRepositoryError):
    error_type = NudgeErrorType.CACHE_ERROR


class ResourceError(NudgeRepositoryError):
    error_type = NudgeErrorType.RESOURCE_ERROR


ERROR_CLASSES = {
    cls.error_type: cls
    for cls in (
        AuthenticationError,
        NudgeValidationError,
        RateLimitExceeded,
        DataFetchError,
        DataWriteError,
        TransactionError,
        StreamError,
        CacheError,
        ResourceError,
    )
}


__all__ = [
    "NudgeErrorSeverity",
    "NudgeErrorType",
    "NudgeRepositoryError",
    "AuthenticationError",
    "NudgeValidationError",
    "RateLimitExceeded",
    "DataFetchError",
    "DataWriteError",
    "TransactionError",
    "StreamError",
    "CacheError",
    "ResourceError",
    "ERROR_CLASSES",
]

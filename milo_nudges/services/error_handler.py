"""
Repository Error Handler

Single place where repository failures are logged, counted and forwarded to
error tracking. Callers decide whether to raise the returned exception or
degrade gracefully.
"""

from collections import Counter
from typing import Any, Dict, Optional

import structlog

from milo_nudges.errors import ERROR_CLASSES, NudgeErrorSeverity, NudgeErrorType, NudgeRepositoryError
from milo_nudges.services.monitoring.error_tracking import capture_repository_error

logger = structlog.get_logger(__name__)


class NudgeErrorHandler:
    """
    Logs repository failures at a level derived from their severity.

    Args:
        report_errors: Forward reportable errors (medium severity and up) to Sentry
    """

    def __init__(self, report_errors: bool = True):
        self.report_errors = report_errors
        self.error_counts: Counter = Counter()
        self.logger = logger.bind(service="nudge_repository")

    def log_error(
        self,
        error: BaseException,
        message: str,
        error_type: NudgeErrorType,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Record a failure that the caller will not raise.

        Args:
            error: The original failure
            message: Human-readable description of the failed operation
            error_type: Category used for severity and reporting
            context: Additional debugging data
        """
        self.error_counts[error_type] += 1

        severity = error_type.severity
        if severity >= NudgeErrorSeverity.CRITICAL:
            log = self.logger.critical
        elif severity >= NudgeErrorSeverity.MEDIUM:
            log = self.logger.error
        else:
            log = self.logger.warning

        log(
            "nudge_repository_error",
            message=message,
            error_type=error_type.value,
            error=str(error),
            error_class=type(error).__name__,
            **(context or {})
        )

        if self.report_errors and error_type.should_report:
            capture_repository_error(error, error_type.value, message, context)

    def handle_repository_exception(
        self,
        error: BaseException,
        message: str,
        error_type: NudgeErrorType,
        context: Optional[Dict[str, Any]] = None
    ) -> NudgeRepositoryError:
        """
        Record a failure and return the exception the caller should raise.

        Repository errors (rate limit, validation, authentication, ...) are
        returned unchanged so callers still see their kind; anything else is
        wrapped into the class matching `error_type`.

        Returns:
            Exception to raise
        """
        if isinstance(error, NudgeRepositoryError):
            self.log_error(error, message, error.error_type, context)
            return error

        self.log_error(error, message, error_type, context)
        return ERROR_CLASSES[error_type](message, original_error=error, context=context)

"""
Sentry Error Tracking
Provides error tracking with repository context for production debugging
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).
    This allows graceful degradation in development environments.

    Returns:
        True if Sentry was initialized
    """
    from milo_nudges.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return False

    try:
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            traces_sample_rate=0.1,  # 10% of operations traced
        )

        logger.info(
            "Sentry initialized",
            extra={"environment": settings.sentry_environment or settings.environment}
        )
        return True
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def set_repository_context(operation: str, user_id: Optional[str] = None) -> None:
    """
    Set Sentry context for the repository operation in flight.

    Args:
        operation: Repository operation name (e.g., "getNudges")
        user_id: Signed-in user, if known
    """
    try:
        import sentry_sdk

        sentry_sdk.set_context("nudge_repository", {
            "operation": operation,
            "user_id": user_id or "anonymous",
        })
        sentry_sdk.set_tag("operation", operation)
        if user_id:
            sentry_sdk.set_user({"id": user_id})
    except Exception as e:
        logger.debug(f"Failed to set Sentry context: {e}")


def capture_repository_error(
    error: BaseException,
    error_type: str,
    message: Optional[str] = None,
    context: Optional[dict] = None
) -> None:
    """
    Report a repository failure to Sentry.

    Never raises: tracking failures must not change repository behavior.

    Args:
        error: The failure to report
        error_type: NudgeErrorType value, used as a tag
        message: Human-readable description of the failed operation
        context: Extra debugging data
    """
    try:
        import sentry_sdk

        with sentry_sdk.new_scope() as scope:
            scope.set_tag("error_type", error_type)
            if message:
                scope.set_extra("message", message)
            for key, value in (context or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.debug(f"Failed to capture error in Sentry: {e}")

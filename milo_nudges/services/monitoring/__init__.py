"""
Monitoring Module
Exports for structured logging, error tracking and circuit breakers
"""

from milo_nudges.services.monitoring.logging import setup_logging, configure_structlog, NudgeJsonFormatter
from milo_nudges.services.monitoring.circuit_breakers import (
    get_breaker,
    with_circuit_breaker,
    CircuitBreakerError,
    CircuitBreakerLoggingListener,
)
from milo_nudges.services.monitoring.error_tracking import (
    init_sentry,
    set_repository_context,
    capture_repository_error,
)

__all__ = [
    "setup_logging",
    "configure_structlog",
    "NudgeJsonFormatter",
    "get_breaker",
    "with_circuit_breaker",
    "CircuitBreakerError",
    "CircuitBreakerLoggingListener",
    "init_sentry",
    "set_repository_context",
    "capture_repository_error",
]

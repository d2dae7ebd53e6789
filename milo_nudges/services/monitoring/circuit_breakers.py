"""
Circuit Breakers for Persisted Cache Backends

A failing Redis must not slow every repository call down to its socket
timeout. After `circuit_breaker_fail_max` consecutive failures the "redis"
breaker opens; calls then fail fast with CircuitBreakerError, which the
persisted cache treats like any other backend failure (a miss or a skipped
write) until `circuit_breaker_reset_timeout` lets a trial call through.
"""

import functools
from typing import Dict, Optional

import pybreaker
import structlog

from milo_nudges.config import settings

logger = structlog.get_logger(__name__)

KNOWN_SERVICES = ("redis",)


class CircuitBreakerLoggingListener(pybreaker.CircuitBreakerListener):
    """Logs breaker transitions; an opening breaker is also sent to Sentry."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state):
        logger.warning(
            "circuit_breaker_state_change",
            breaker=cb.name,
            old_state=old_state.name,
            new_state=new_state.name,
            fail_count=cb.fail_counter,
        )

        if new_state.name != pybreaker.STATE_OPEN:
            return

        from milo_nudges.services.monitoring.error_tracking import capture_repository_error

        capture_repository_error(
            pybreaker.CircuitBreakerError(f"Circuit breaker opened: {cb.name}"),
            "resource_error",
            message=f"{cb.name} isolated after {cb.fail_counter} consecutive failures",
            context={"breaker": cb.name, "reset_timeout": cb.reset_timeout},
        )


_listener: Optional[CircuitBreakerLoggingListener] = None
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Shared breaker for a backend, created on first use.

    Thresholds are read from settings at creation time, so tests that
    change them must do so before the first call.

    Raises:
        ValueError: If service_name is not one of KNOWN_SERVICES
    """
    global _listener

    if service_name not in KNOWN_SERVICES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {KNOWN_SERVICES}")

    breaker = _breakers.get(service_name)
    if breaker is None:
        if _listener is None:
            _listener = CircuitBreakerLoggingListener()
        breaker = pybreaker.CircuitBreaker(
            name=service_name,
            fail_max=settings.circuit_breaker_fail_max,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            listeners=[_listener],
        )
        _breakers[service_name] = breaker
        logger.info(
            "circuit_breaker_created",
            breaker=service_name,
            fail_max=breaker.fail_max,
            reset_timeout=breaker.reset_timeout,
        )
    return breaker


def with_circuit_breaker(service_name: str):
    """
    Route every call of the decorated function through a service breaker.

        @with_circuit_breaker("redis")
        def read_value(key):
            ...

    An open breaker raises CircuitBreakerError without calling the function.
    """
    def decorator(func):
        @functools.wraps(func)
        def guarded(*args, **kwargs):
            return get_breaker(service_name).call(func, *args, **kwargs)
        return guarded
    return decorator


# Re-exported so callers can catch it without importing pybreaker
from pybreaker import CircuitBreakerError  # noqa: E402

__all__ = [
    "CircuitBreakerLoggingListener",
    "get_breaker",
    "with_circuit_breaker",
    "CircuitBreakerError",
]

"""Framework-agnostic async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - One breaker instance per logical dependency. State lives in the instance
    and is guarded by a single lock; breakers never contend with each other.
  - Half-open probing is conservative: at most one in-flight probe call is
    admitted at a time. Concurrent callers are rejected with
    ``retry_after=0``.
  - Operation errors are counted and re-raised unchanged. The breaker only
    raises its own errors when rejecting a call (``CircuitOpenError``) or when
    a call outlives ``operation_timeout`` (``OperationTimeoutError``).
  - ``crm_core.circuit_breaker.database`` holds the database-scoped wrapper and
    is imported explicitly, since it depends on ``crm_core.settings``.
"""

from crm_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from crm_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
    OperationTimeoutError,
)
from crm_core.circuit_breaker.factory import (
    DEPENDENCY_CLASS_PROFILE,
    EXTERNAL_SERVICE_PROFILE,
    BreakerProfile,
    custom,
    for_dependency_class,
    for_external_service,
)
from crm_core.circuit_breaker.metrics import BreakerListener, LoggingBreakerListener
from crm_core.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "DEPENDENCY_CLASS_PROFILE",
    "EXTERNAL_SERVICE_PROFILE",
    "BreakerListener",
    "BreakerProfile",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "LoggingBreakerListener",
    "OperationTimeoutError",
    "custom",
    "for_dependency_class",
    "for_external_service",
]

"""Preconfigured circuit breakers for common dependency profiles."""

from collections.abc import Sequence
from dataclasses import dataclass

from crm_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from crm_core.circuit_breaker.metrics import BreakerListener
from crm_core.logging import StructuredLogger


@dataclass(frozen=True)
class BreakerProfile:
    """Breaker settings shared by every breaker of one kind, minus the name."""

    failure_threshold: int
    success_threshold: int
    open_duration: float
    operation_timeout: float | None

    def to_config(self, name: str) -> CircuitBreakerConfig:
        """Build a breaker configuration for dependency ``name``."""
        return CircuitBreakerConfig(
            name=name,
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
            open_duration=self.open_duration,
            operation_timeout=self.operation_timeout,
        )


# Fast, frequently called dependencies such as the primary datastore.
DEPENDENCY_CLASS_PROFILE = BreakerProfile(
    failure_threshold=3,
    success_threshold=2,
    open_duration=10.0,
    operation_timeout=3.0,
)

# Slower, less frequently called third-party APIs.
EXTERNAL_SERVICE_PROFILE = BreakerProfile(
    failure_threshold=5,
    success_threshold=3,
    open_duration=60.0,
    operation_timeout=15.0,
)


def for_dependency_class(
    name: str = "database",
    *,
    listeners: Sequence[BreakerListener] | None = None,
    logger: StructuredLogger | None = None,
) -> CircuitBreaker:
    """Build a breaker tuned for datastore calls."""
    return CircuitBreaker(
        DEPENDENCY_CLASS_PROFILE.to_config(name),
        listeners=listeners,
        logger=logger,
    )


def for_external_service(
    name: str,
    *,
    listeners: Sequence[BreakerListener] | None = None,
    logger: StructuredLogger | None = None,
) -> CircuitBreaker:
    """Build a breaker tuned for third-party API calls."""
    return CircuitBreaker(
        EXTERNAL_SERVICE_PROFILE.to_config(name),
        listeners=listeners,
        logger=logger,
    )


def custom(
    config: CircuitBreakerConfig,
    *,
    listeners: Sequence[BreakerListener] | None = None,
    logger: StructuredLogger | None = None,
) -> CircuitBreaker:
    """Build a breaker from an arbitrary configuration.

    No validation happens here beyond what ``CircuitBreakerConfig`` enforces.
    """
    return CircuitBreaker(config, listeners=listeners, logger=logger)

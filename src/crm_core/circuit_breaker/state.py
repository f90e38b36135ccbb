"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import ClassVar


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class ClosedPhase:
    """Normal operation: calls pass through and failures are counted."""

    state: ClassVar[CircuitState] = CircuitState.CLOSED


@dataclass(frozen=True, slots=True)
class OpenPhase:
    """Tripped: calls are rejected until ``next_probe_at``."""

    state: ClassVar[CircuitState] = CircuitState.OPEN

    next_probe_at: datetime


@dataclass(frozen=True, slots=True)
class HalfOpenPhase:
    """Probation: one probe at a time decides between closing and reopening."""

    state: ClassVar[CircuitState] = CircuitState.HALF_OPEN


BreakerPhase = ClosedPhase | OpenPhase | HalfOpenPhase


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        consecutive_failures: Failures counted since the last transition.
        consecutive_successes: Half-open successes since the last transition.
        last_failure_at: Timestamp of the last failed call, if any.
        last_success_at: Timestamp of the last successful call, if any.
        next_probe_at: When a probe may be attempted. ``None`` unless ``OPEN``.
        total_requests: Lifetime count of ``execute`` calls.
        total_failures: Lifetime count of failed and rejected calls.
        total_successes: Lifetime count of successful calls.
    """

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    next_probe_at: datetime | None
    total_requests: int
    total_failures: int
    total_successes: int

"""Circuit breaker shared by every call site that touches the database.

Build one ``DatabaseCircuitBreaker`` in the application's composition root and
inject it into each repository. Failures then aggregate across all call sites
of the database, so a single noisy query cannot open the circuit on its own
and a healthy majority cannot mask a real outage.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from functools import partial
from typing import ParamSpec, TypeVar

import structlog

from crm_core.circuit_breaker.breaker import CircuitBreaker
from crm_core.circuit_breaker.exceptions import CircuitOpenError
from crm_core.circuit_breaker.metrics import BreakerListener
from crm_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from crm_core.logging import (
    StructuredLogger,
    get_log_level_value,
    log_info,
    log_warning,
)
from crm_core.settings import DatabaseBreakerSettings

T = TypeVar("T")
P = ParamSpec("P")

# Parent of every stdlib logger this package logs through.
BREAKER_LOGGER_NAME = "crm_core.circuit_breaker"

# Business-rule rejections surfaced by the ORM: the database is healthy.
DEFAULT_RECOVERABLE_PATTERNS: tuple[str, ...] = (
    "Unique constraint",
    "Foreign key constraint",
    "Record to update not found",
    "P2002",
    "P2003",
    "P2025",
)


def is_recoverable_error(
    exc: BaseException,
    patterns: Iterable[str] = DEFAULT_RECOVERABLE_PATTERNS,
) -> bool:
    """Return whether ``exc`` looks like an expected business-rule failure."""
    message = str(exc)
    return any(pattern in message for pattern in patterns)


class DatabaseCircuitBreaker:
    """Facade over the one breaker instance guarding the database.

    Error classification here is diagnostic only. Recoverable errors are
    logged distinctly but the inner breaker has already counted them as
    failures, and they are re-raised unchanged.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        recoverable_patterns: Iterable[str] = DEFAULT_RECOVERABLE_PATTERNS,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._breaker = breaker
        self._recoverable_patterns = tuple(recoverable_patterns)
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    @property
    def name(self) -> str:
        return self._breaker.name

    @property
    def recoverable_patterns(self) -> tuple[str, ...]:
        return self._recoverable_patterns

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a database operation under the shared breaker.

        Example::

            user = await db_breaker.execute(
                lambda: session.get(User, user_id)
            )
        """
        try:
            return await self._breaker.execute(operation)
        except CircuitOpenError as exc:
            log_warning(
                self._logger,
                "database.call_rejected",
                breaker=self.name,
                retry_after=exc.retry_after,
            )
            raise
        except Exception as exc:
            if is_recoverable_error(exc, self._recoverable_patterns):
                log_warning(
                    self._logger,
                    "database.recoverable_error",
                    breaker=self.name,
                    error_type=exc.__class__.__name__,
                    error=str(exc),
                )
            raise

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Run ``func(*args, **kwargs)`` under the shared breaker."""
        return await self.execute(partial(func, *args, **kwargs))

    def current_state(self) -> CircuitState:
        return self._breaker.current_state()

    def stats(self) -> BreakerSnapshot:
        return self._breaker.stats()

    def is_open(self) -> bool:
        """Return whether calls are currently being rejected outright."""
        return self._breaker.current_state() == CircuitState.OPEN

    def is_closed(self) -> bool:
        """Return whether the database is considered healthy."""
        return self._breaker.current_state() == CircuitState.CLOSED

    def reset(self) -> None:
        """Close the circuit after an operator confirmed recovery."""
        log_info(self._logger, "database.manual_reset", breaker=self.name)
        self._breaker.reset()

    def trip(self) -> None:
        """Open the circuit for planned maintenance."""
        log_info(self._logger, "database.manual_trip", breaker=self.name)
        self._breaker.trip()


def build_database_circuit_breaker(
    settings: DatabaseBreakerSettings | None = None,
    *,
    listeners: Sequence[BreakerListener] | None = None,
    logger: StructuredLogger | None = None,
) -> DatabaseCircuitBreaker:
    """Build the database breaker for a composition root.

    The settings' ``log_level`` is applied to the ``crm_core.circuit_breaker``
    stdlib logger, so breaker events can be quieter or louder than the rest
    of the service.

    Args:
        settings: Breaker settings. Defaults to ``DatabaseBreakerSettings()``,
            which reads ``CRM_DB_BREAKER_*`` environment variables.
        listeners: Optional telemetry hooks for the inner breaker.
        logger: Structured logger shared by the breaker and the wrapper.

    Returns:
        A new wrapper owning a new breaker. Call once per process and inject
        the result wherever the database is used.
    """
    resolved = DatabaseBreakerSettings() if settings is None else settings
    logging.getLogger(BREAKER_LOGGER_NAME).setLevel(
        get_log_level_value(resolved.log_level)
    )
    breaker = CircuitBreaker(
        resolved.to_breaker_config(),
        listeners=listeners,
        logger=logger,
    )
    return DatabaseCircuitBreaker(
        breaker,
        recoverable_patterns=(
            *DEFAULT_RECOVERABLE_PATTERNS,
            *resolved.recoverable_patterns,
        ),
        logger=logger,
    )

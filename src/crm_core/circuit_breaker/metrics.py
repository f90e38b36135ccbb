"""Observability hooks for circuit breakers."""

from typing import Protocol

import structlog

from crm_core.circuit_breaker.state import CircuitState
from crm_core.logging import StructuredLogger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        Hooks are synchronous and are called after the breaker has released
        its state lock. They must return quickly; exceptions raised by a hook
        are discarded and never reach the protected call.
    """

    def on_state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        """Handle circuit state transitions."""

    def on_call_rejected(self, name: str) -> None:
        """Handle call rejection while the circuit is open."""

    def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle successful protected call completion."""

    def on_call_failed(self, name: str, exc: BaseException, elapsed: float) -> None:
        """Handle failed protected call completion."""


class LoggingBreakerListener(BreakerListener):
    """Listener that writes breaker events to a structured logger."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    def on_state_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        log_info(
            self._logger,
            "circuit_breaker.state_changed",
            breaker=name,
            old_state=str(old),
            new_state=str(new),
        )

    def on_call_rejected(self, name: str) -> None:
        log_warning(self._logger, "circuit_breaker.call_rejected", breaker=name)

    def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """No-op for this listener."""
        _ = (name, elapsed)

    def on_call_failed(self, name: str, exc: BaseException, elapsed: float) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.call_failed",
            breaker=name,
            error_type=exc.__class__.__name__,
            error=str(exc),
            elapsed_seconds=round(elapsed, 6),
        )

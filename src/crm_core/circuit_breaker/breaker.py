"""Core circuit breaker implementation."""

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any, ParamSpec, TypeVar

import structlog

from crm_core.circuit_breaker.exceptions import CircuitOpenError, OperationTimeoutError
from crm_core.circuit_breaker.metrics import BreakerListener
from crm_core.circuit_breaker.state import (
    BreakerPhase,
    BreakerSnapshot,
    CircuitState,
    ClosedPhase,
    HalfOpenPhase,
    OpenPhase,
)
from crm_core.logging import StructuredLogger, log_error, log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_Transition = tuple[CircuitState, CircuitState]
_LogFn = Callable[..., None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        name: Breaker name used in logs and telemetry. One per dependency.
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        success_threshold: Consecutive successes while ``HALF_OPEN`` before
            closing.
        open_duration: Seconds to stay ``OPEN`` before allowing a probe.
        operation_timeout: Seconds a single call may run. ``None`` or ``0``
            disables the deadline.
    """

    name: str
    failure_threshold: int = 5
    success_threshold: int = 1
    open_duration: float = 30.0
    operation_timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("name must be non-empty")
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.open_duration < 0:
            raise ValueError("open_duration must be >= 0")
        if self.operation_timeout is not None and self.operation_timeout < 0:
            raise ValueError("operation_timeout must be >= 0")


@dataclass(frozen=True, slots=True)
class _Admission:
    """Ticket for one admitted call, tied to the phase it was admitted in."""

    generation: int
    is_probe: bool


@dataclass(slots=True)
class _Effects:
    """Log events and transitions gathered under the lock, published after."""

    logs: list[tuple[_LogFn, str, dict[str, Any]]] = field(default_factory=list)
    transitions: list[_Transition] = field(default_factory=list)

    def log(self, log_fn: _LogFn, event: str, **fields: Any) -> None:
        self.logs.append((log_fn, event, fields))


class CircuitBreaker:
    """Stateful proxy around a dangerous async operation.

    All reads and writes of the runtime state happen inside one
    ``threading.Lock`` critical section per admission and per outcome. The
    lock is never held across an ``await``, so ``reset``/``trip`` stay
    synchronous and the breaker may be shared between event loops in
    different threads. Log events and listener callbacks run after the lock
    is released.

    Every transition starts a new generation. Outcomes of calls admitted in an
    earlier generation still update lifetime counters and timestamps but do not
    drive transitions.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        *,
        listeners: Sequence[BreakerListener] | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Build a circuit breaker in the ``CLOSED`` state.

        Args:
            config: Breaker behavior configuration.
            listeners: Optional telemetry hooks for breaker events.
            logger: Structured logger. Defaults to this module's structlog
                logger.
        """
        self.config = config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._lock = threading.Lock()
        self._orphans: set[asyncio.Future[Any]] = set()

        self._phase: BreakerPhase = ClosedPhase()
        self._generation = 0
        self._probe_in_flight = False
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0

        log_info(
            self._logger,
            "circuit_breaker.initialized",
            breaker=config.name,
            failure_threshold=config.failure_threshold,
            success_threshold=config.success_threshold,
            open_duration=config.open_duration,
            operation_timeout=config.operation_timeout,
        )

    @property
    def name(self) -> str:
        return self.config.name

    def _publish(self, effects: _Effects) -> None:
        for log, event, fields in effects.logs:
            log(self._logger, event, **fields)
        for old, new in effects.transitions:
            for listener in self._listeners:
                try:
                    listener.on_state_change(self.name, old, new)
                except Exception:
                    continue

    def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_rejected(self.name)
            except Exception:
                continue

    def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    def _emit_call_failed(self, exc: BaseException, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue

    def _open_phase(self, now: datetime) -> OpenPhase:
        return OpenPhase(
            next_probe_at=now + timedelta(seconds=self.config.open_duration)
        )

    def _transition_locked(self, new_phase: BreakerPhase, effects: _Effects) -> None:
        old = self._phase.state
        self._phase = new_phase
        self._generation += 1
        self._probe_in_flight = False
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        if old == new_phase.state:
            return
        effects.transitions.append((old, new_phase.state))
        effects.log(
            log_info,
            "circuit_breaker.state_changed",
            breaker=self.name,
            old_state=str(old),
            new_state=str(new_phase.state),
        )

    def _admit(self) -> tuple[_Admission | None, float, _Effects]:
        """Decide whether the current call may run.

        Returns the admission ticket (``None`` when rejected), the rejection's
        ``retry_after`` and the effects to publish once the lock is released.
        """
        effects = _Effects()
        with self._lock:
            self._total_requests += 1
            phase = self._phase

            if isinstance(phase, OpenPhase):
                retry_after = (phase.next_probe_at - _utcnow()).total_seconds()
                if retry_after > 0:
                    self._total_failures += 1
                    return None, retry_after, effects
                self._transition_locked(HalfOpenPhase(), effects)
                self._probe_in_flight = True
                return _Admission(self._generation, is_probe=True), 0.0, effects

            if isinstance(phase, HalfOpenPhase):
                if self._probe_in_flight:
                    self._total_failures += 1
                    return None, 0.0, effects
                self._probe_in_flight = True
                return _Admission(self._generation, is_probe=True), 0.0, effects

            return _Admission(self._generation, is_probe=False), 0.0, effects

    def _record_success(self, admission: _Admission) -> _Effects:
        effects = _Effects()
        with self._lock:
            self._total_successes += 1
            self._last_success_at = _utcnow()
            if admission.generation != self._generation:
                return effects

            if isinstance(self._phase, HalfOpenPhase):
                self._probe_in_flight = False
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.config.success_threshold:
                    self._transition_locked(ClosedPhase(), effects)
            else:
                self._consecutive_failures = 0
            return effects

    def _record_failure(self, admission: _Admission, exc: BaseException) -> _Effects:
        effects = _Effects()
        with self._lock:
            now = _utcnow()
            self._total_failures += 1
            self._last_failure_at = now
            if admission.generation != self._generation:
                return effects

            if isinstance(self._phase, HalfOpenPhase):
                effects.log(
                    log_warning,
                    "circuit_breaker.probe_failed",
                    breaker=self.name,
                    error=str(exc),
                )
                self._transition_locked(self._open_phase(now), effects)
                return effects

            self._consecutive_failures += 1
            if self._consecutive_failures >= self.config.failure_threshold:
                effects.log(
                    log_error,
                    "circuit_breaker.threshold_reached",
                    breaker=self.name,
                    failures=self._consecutive_failures,
                    threshold=self.config.failure_threshold,
                    error=str(exc),
                )
                self._transition_locked(self._open_phase(now), effects)
            else:
                effects.log(
                    log_warning,
                    "circuit_breaker.failure_recorded",
                    breaker=self.name,
                    failures=self._consecutive_failures,
                    threshold=self.config.failure_threshold,
                    error=str(exc),
                )
            return effects

    def _abandon(self, admission: _Admission) -> None:
        # Cancelled calls are neither successes nor failures; free the probe slot.
        with self._lock:
            if admission.is_probe and admission.generation == self._generation:
                self._probe_in_flight = False

    def _orphan(self, task: asyncio.Future[T]) -> None:
        """Cancel ``task`` without waiting for it to stop."""
        task.cancel()
        self._orphans.add(task)
        task.add_done_callback(self._settle_orphan)

    def _settle_orphan(self, task: asyncio.Future[object]) -> None:
        self._orphans.discard(task)
        # Retrieve the late outcome so asyncio does not report it.
        with suppress(asyncio.CancelledError, Exception):
            task.exception()

    async def _run(self, operation: Callable[[], Awaitable[T]]) -> T:
        timeout = self.config.operation_timeout
        if not timeout:
            return await operation()

        # The deadline holds even for operations that ignore cancellation or
        # clean up slowly: the caller is released as soon as it expires.
        task = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except BaseException:
            self._orphan(task)
            raise
        if task not in done:
            self._orphan(task)
            raise OperationTimeoutError(self.name, timeout)
        return task.result()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Invoke a zero-argument async operation under breaker protection.

        Args:
            operation: Dangerous async callable to execute.

        Returns:
            The result of ``operation`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            OperationTimeoutError: When ``operation_timeout`` elapses first. The
                operation is cancelled but not awaited, and whatever it does
                afterwards is ignored.
            Exception: The original exception from ``operation``, unchanged.
        """
        admission, retry_after, effects = self._admit()
        self._publish(effects)
        if admission is None:
            self._emit_call_rejected()
            raise CircuitOpenError(self.name, retry_after=retry_after)

        start = time.monotonic()
        try:
            result = await self._run(operation)
        except Exception as exc:
            elapsed = max(time.monotonic() - start, 0.0)
            self._publish(self._record_failure(admission, exc))
            self._emit_call_failed(exc, elapsed)
            raise
        except BaseException:
            self._abandon(admission)
            raise

        elapsed = max(time.monotonic() - start, 0.0)
        self._publish(self._record_success(admission))
        self._emit_call_succeeded(elapsed)
        return result

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke ``func(*args, **kwargs)`` under breaker protection."""
        return await self.execute(partial(func, *args, **kwargs))

    def reset(self) -> None:
        """Force the circuit ``CLOSED`` with cleared counters."""
        effects = _Effects()
        effects.log(log_info, "circuit_breaker.manual_reset", breaker=self.name)
        with self._lock:
            self._transition_locked(ClosedPhase(), effects)
        self._publish(effects)

    def trip(self) -> None:
        """Force the circuit ``OPEN`` with a fresh probe deadline."""
        effects = _Effects()
        effects.log(log_info, "circuit_breaker.manual_trip", breaker=self.name)
        with self._lock:
            self._transition_locked(self._open_phase(_utcnow()), effects)
        self._publish(effects)

    def current_state(self) -> CircuitState:
        """Return the current state without side effects."""
        with self._lock:
            return self._phase.state

    def stats(self) -> BreakerSnapshot:
        """Return a point-in-time snapshot of state and counters."""
        with self._lock:
            phase = self._phase
            return BreakerSnapshot(
                name=self.name,
                state=phase.state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                next_probe_at=(
                    phase.next_probe_at if isinstance(phase, OpenPhase) else None
                ),
                total_requests=self._total_requests,
                total_failures=self._total_failures,
                total_successes=self._total_successes,
            )

import pytest

from crm_core.circuit_breaker import (
    DEPENDENCY_CLASS_PROFILE,
    EXTERNAL_SERVICE_PROFILE,
    CircuitBreakerConfig,
    CircuitState,
    custom,
    for_dependency_class,
    for_external_service,
)
from tests.crm_core.support.fakes import FakeLogger, RecordingListener

pytestmark = pytest.mark.asyncio


async def test_dependency_class_profile_is_fast_and_strict(
    fake_logger: FakeLogger,
) -> None:
    breaker = for_dependency_class(logger=fake_logger)

    assert breaker.name == "database"
    assert breaker.config == CircuitBreakerConfig(
        name="database",
        failure_threshold=3,
        success_threshold=2,
        open_duration=10.0,
        operation_timeout=3.0,
    )
    assert breaker.current_state() == CircuitState.CLOSED


async def test_external_service_profile_is_more_tolerant(
    fake_logger: FakeLogger,
) -> None:
    breaker = for_external_service("payments-api", logger=fake_logger)

    assert breaker.name == "payments-api"
    assert breaker.config.failure_threshold == 5
    assert breaker.config.success_threshold == 3
    assert breaker.config.open_duration == 60.0
    assert breaker.config.operation_timeout == 15.0


async def test_external_profile_is_slower_than_dependency_profile() -> None:
    assert (
        EXTERNAL_SERVICE_PROFILE.failure_threshold
        > DEPENDENCY_CLASS_PROFILE.failure_threshold
    )
    assert (
        EXTERNAL_SERVICE_PROFILE.success_threshold
        > DEPENDENCY_CLASS_PROFILE.success_threshold
    )
    assert (
        EXTERNAL_SERVICE_PROFILE.open_duration > DEPENDENCY_CLASS_PROFILE.open_duration
    )
    assert (
        EXTERNAL_SERVICE_PROFILE.operation_timeout is not None
        and DEPENDENCY_CLASS_PROFILE.operation_timeout is not None
        and EXTERNAL_SERVICE_PROFILE.operation_timeout
        > DEPENDENCY_CLASS_PROFILE.operation_timeout
    )


async def test_each_factory_call_builds_independent_breaker(
    fake_logger: FakeLogger,
) -> None:
    first = for_dependency_class("db-a", logger=fake_logger)
    second = for_dependency_class("db-b", logger=fake_logger)

    first.trip()

    assert first.current_state() == CircuitState.OPEN
    assert second.current_state() == CircuitState.CLOSED


async def test_custom_passes_config_and_listeners_through(
    fake_logger: FakeLogger,
) -> None:
    config = CircuitBreakerConfig(
        name="cache",
        failure_threshold=1,
        success_threshold=1,
        open_duration=0.5,
    )
    listener = RecordingListener()

    breaker = custom(config, listeners=[listener], logger=fake_logger)
    breaker.trip()

    assert breaker.config is config
    assert listener.transitions() == [(CircuitState.CLOSED, CircuitState.OPEN)]


async def test_custom_relies_on_config_validation() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        custom(CircuitBreakerConfig(name="bad", failure_threshold=0))

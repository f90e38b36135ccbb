from __future__ import annotations

import pytest

import crm_core.circuit_breaker.breaker as breaker_mod
from tests.crm_core.support.fakes import FakeClock, FakeLogger, RecordingListener


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def recording_listener() -> RecordingListener:
    """Provide a fresh recording breaker listener per test."""
    return RecordingListener()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze the breaker clock and return a handle to advance it."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_utcnow", clock.now)
    return clock

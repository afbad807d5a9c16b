from __future__ import annotations

import threading

import allure
import pytest

from repo_digest.engine.circuit_breaker import CircuitBreaker
from repo_digest.engine.models import BreakerStatus

pytestmark = [
    allure.epic("Analysis Engine"),
    allure.feature("Circuit Breaker"),
]


def test_opens_after_exactly_threshold_failures(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout_seconds=10, clock=fake_clock)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.allow_request()
    assert breaker.status == BreakerStatus.CLOSED

    breaker.record_failure()
    assert not breaker.allow_request()
    assert breaker.status == BreakerStatus.OPEN
    assert breaker.open_count == 1


def test_allows_trial_after_reset_timeout(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=10, clock=fake_clock)
    breaker.record_failure()
    breaker.record_failure()

    fake_clock.advance(9.9)
    assert not breaker.allow_request()
    fake_clock.advance(0.1)
    assert breaker.allow_request()


def test_success_after_trial_closes_and_zeroes_counter(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=5, clock=fake_clock)
    breaker.record_failure()
    breaker.record_failure()
    fake_clock.advance(5)

    assert breaker.allow_request()
    breaker.record_success()

    snapshot = breaker.snapshot()
    assert snapshot.status == BreakerStatus.CLOSED
    assert snapshot.consecutive_failures == 0
    assert snapshot.opened_at is None


def test_failed_trial_reopens_and_restarts_timer(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=5, clock=fake_clock)
    breaker.record_failure()
    breaker.record_failure()
    fake_clock.advance(6)
    assert breaker.allow_request()

    breaker.record_failure()

    assert not breaker.allow_request()
    assert breaker.snapshot().opened_at == 6
    assert breaker.open_count == 2
    fake_clock.advance(5)
    assert breaker.allow_request()


def test_in_flight_failure_while_open_keeps_reset_deadline(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=60, clock=fake_clock)
    breaker.record_failure()
    breaker.record_failure()

    fake_clock.advance(50)
    breaker.record_failure()

    snapshot = breaker.snapshot()
    assert snapshot.opened_at == 0
    assert snapshot.consecutive_failures == 3
    assert breaker.open_count == 1
    fake_clock.advance(10)
    assert breaker.allow_request()


def test_success_interrupts_consecutive_failure_count(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=5, clock=fake_clock)

    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.status == BreakerStatus.CLOSED


def test_reset_forces_closed(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout_seconds=60, clock=fake_clock)
    breaker.record_failure()
    assert not breaker.allow_request()

    breaker.reset()

    assert breaker.allow_request()
    assert breaker.snapshot().consecutive_failures == 0
    assert breaker.open_count == 0


def test_concurrent_failures_are_all_counted(fake_clock) -> None:
    breaker = CircuitBreaker(failure_threshold=1_000, reset_timeout_seconds=60, clock=fake_clock)

    def _fail() -> None:
        for _ in range(100):
            breaker.record_failure()

    threads = [threading.Thread(target=_fail) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert breaker.snapshot().consecutive_failures == 800
    assert breaker.status == BreakerStatus.CLOSED


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreaker(failure_threshold=0, reset_timeout_seconds=1)

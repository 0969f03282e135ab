"""Tests for the per-domain circuit breaker."""

import pytest

from reqgate.errors import CircuitOpen
from reqgate.governance.circuit import CircuitBreaker
from reqgate.models.records import CircuitStatus

DOMAIN = "api.example.com"


@pytest.fixture
def breaker(store, clock):
    return CircuitBreaker(store, failure_threshold=5, recovery_time=60, clock=clock)


def _trip(breaker, n=5):
    for _ in range(n):
        breaker.record_failure(DOMAIN)


class TestClosed:
    def test_absent_state_reads_as_closed(self, breaker):
        assert breaker.status(DOMAIN) == {
            "domain": DOMAIN,
            "state": "closed",
            "failures": 0,
            "opened_at": None,
            "remaining_seconds": 0,
        }
        breaker.guard(DOMAIN)

    def test_failures_below_threshold_keep_circuit_closed(self, breaker):
        _trip(breaker, 4)
        breaker.guard(DOMAIN)
        assert breaker.status(DOMAIN)["failures"] == 4

    def test_success_resets_failure_count(self, breaker):
        _trip(breaker, 4)
        breaker.record_success(DOMAIN)
        _trip(breaker, 4)
        assert breaker.state(DOMAIN) is CircuitStatus.CLOSED

    def test_success_while_closed_leaves_probe_key_alone(self, breaker, store, monkeypatch):
        deleted = []
        monkeypatch.setattr(store, "delete", deleted.append)
        breaker.record_success(DOMAIN)
        _trip(breaker, 2)
        breaker.record_success(DOMAIN)
        assert deleted == []

    def test_threshold_trips_and_pins_counter(self, breaker, clock):
        _trip(breaker)
        status = breaker.status(DOMAIN)
        assert status["state"] == "open"
        assert status["failures"] == 5
        assert status["opened_at"] == clock.now

    def test_failure_statuses_default_to_5xx(self, breaker):
        assert breaker.is_failure_status(500)
        assert breaker.is_failure_status(599)
        assert not breaker.is_failure_status(429)
        assert not breaker.is_failure_status(404)

    def test_custom_failure_statuses(self, store, clock):
        cb = CircuitBreaker(store, failure_statuses={502, 503}, clock=clock)
        assert cb.is_failure_status(503)
        assert not cb.is_failure_status(500)


class TestOpen:
    def test_open_circuit_fails_fast_with_remaining_time(self, breaker, clock):
        _trip(breaker)
        clock.advance(20)
        with pytest.raises(CircuitOpen) as exc:
            breaker.guard(DOMAIN)
        assert exc.value.domain == DOMAIN
        assert exc.value.remaining_seconds == 40

    def test_recovery_time_admits_one_probe(self, breaker, clock):
        _trip(breaker)
        clock.advance(61)
        breaker.guard(DOMAIN)
        assert breaker.state(DOMAIN) is CircuitStatus.HALF_OPEN
        with pytest.raises(CircuitOpen) as exc:
            breaker.guard(DOMAIN)
        assert exc.value.remaining_seconds == 0

    def test_transition_happens_exactly_at_recovery_time(self, breaker, clock):
        _trip(breaker)
        clock.advance(60)
        breaker.guard(DOMAIN)


class TestHalfOpen:
    def test_probe_success_closes_circuit(self, breaker, clock):
        _trip(breaker)
        clock.advance(61)
        breaker.guard(DOMAIN)
        breaker.record_success(DOMAIN)
        assert breaker.status(DOMAIN)["state"] == "closed"
        assert breaker.status(DOMAIN)["failures"] == 0
        assert breaker.status(DOMAIN)["opened_at"] is None
        breaker.guard(DOMAIN)
        breaker.guard(DOMAIN)

    def test_probe_failure_reopens_with_fresh_timestamp(self, breaker, clock):
        _trip(breaker)
        clock.advance(61)
        breaker.guard(DOMAIN)
        breaker.record_failure(DOMAIN)
        status = breaker.status(DOMAIN)
        assert status["state"] == "open"
        assert status["opened_at"] == clock.now
        with pytest.raises(CircuitOpen) as exc:
            breaker.guard(DOMAIN)
        assert exc.value.remaining_seconds == 60

    def test_probe_lock_released_after_probe_failure(self, breaker, clock):
        _trip(breaker)
        clock.advance(61)
        breaker.guard(DOMAIN)
        breaker.record_failure(DOMAIN)
        clock.advance(61)
        breaker.guard(DOMAIN)

    def test_abandoned_probe_lock_expires_with_timeout(self, store, clock):
        cb = CircuitBreaker(store, failure_threshold=1, recovery_time=10, probe_timeout=5, clock=clock)
        cb.record_failure(DOMAIN)
        clock.advance(10)
        cb.guard(DOMAIN)
        with pytest.raises(CircuitOpen):
            cb.guard(DOMAIN)
        clock.advance(5)
        cb.guard(DOMAIN)

    def test_only_one_probe_across_breakers_sharing_a_store(self, store, clock):
        a = CircuitBreaker(store, failure_threshold=1, recovery_time=10, clock=clock)
        b = CircuitBreaker(store, failure_threshold=1, recovery_time=10, clock=clock)
        a.record_failure(DOMAIN)
        clock.advance(10)
        a.guard(DOMAIN)
        with pytest.raises(CircuitOpen):
            b.guard(DOMAIN)


class TestAdmin:
    def test_reset_closes_open_circuit(self, breaker):
        _trip(breaker)
        breaker.reset(DOMAIN)
        assert breaker.state(DOMAIN) is CircuitStatus.CLOSED
        breaker.guard(DOMAIN)

    def test_namespaces_share_or_isolate_state(self, store, clock):
        app_a = CircuitBreaker(store, failure_threshold=1, prefix="app-a", clock=clock)
        app_b = CircuitBreaker(store, failure_threshold=1, prefix="app-b", clock=clock)
        app_a.record_failure(DOMAIN)
        app_b.guard(DOMAIN)

        shared_a = CircuitBreaker(store, failure_threshold=1, prefix="app-a", namespace="cluster", clock=clock)
        shared_b = CircuitBreaker(store, failure_threshold=1, prefix="app-b", namespace="cluster", clock=clock)
        shared_a.record_failure(DOMAIN)
        with pytest.raises(CircuitOpen):
            shared_b.guard(DOMAIN)

    def test_state_survives_longer_than_recovery_time(self, store, clock):
        cb = CircuitBreaker(store, failure_threshold=1, recovery_time=200_000, clock=clock)
        cb.record_failure(DOMAIN)
        clock.advance(150_000)
        assert cb.state(DOMAIN) is CircuitStatus.OPEN

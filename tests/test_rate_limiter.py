"""Tests for domain blocks and the rate limiter."""

import pytest

from reqgate.errors import RateLimited
from reqgate.governance.blocks import DomainBlockRegistry
from reqgate.governance.ratelimit import ALLOW, RateLimiter, Wait


@pytest.fixture
def registry(store, clock):
    return DomainBlockRegistry(store, clock=clock)


@pytest.fixture
def limiter(registry, clock):
    return RateLimiter(registry, default_block_time=15, clock=clock)


class TestDomainBlockRegistry:
    def test_reblock_replaces_instead_of_stacking(self, registry):
        registry.block("api.example.com", 10)
        registry.block("api.example.com", 20)
        rows = registry.all()
        assert len(rows) == 1
        assert rows[0].wait_minutes == 20

    def test_unblock(self, registry):
        registry.block("api.example.com", 5)
        assert registry.unblock("api.example.com") is True
        assert registry.unblock("api.example.com") is False
        assert registry.is_blocked("api.example.com") is False

    def test_expired_block_is_ignored_until_purged(self, registry, clock):
        registry.block("a.example.com", 1)
        registry.block("b.example.com", 10)
        clock.advance(61)
        assert not registry.is_blocked("a.example.com")
        assert [b.domain for b in registry.active()] == ["b.example.com"]
        assert len(registry.all()) == 2
        assert registry.purge_expired() == 1
        assert [b.domain for b in registry.all()] == ["b.example.com"]

    def test_unblock_at_is_blocked_at_plus_wait(self, registry):
        block = registry.block("api.example.com", 15, reason="HTTP 429")
        assert (block.unblock_at - block.blocked_at).total_seconds() == 15 * 60
        assert block.reason == "HTTP 429"


class TestRateLimiter:
    def test_allows_unblocked_domain(self, limiter):
        assert limiter.guard("api.example.com") is ALLOW

    def test_fresh_block_reports_at_most_wait_minutes(self, limiter, registry, clock):
        registry.block("api.example.com", 7)
        with pytest.raises(RateLimited) as exc:
            limiter.guard("api.example.com")
        assert exc.value.remaining_minutes == 7
        clock.advance(30)
        with pytest.raises(RateLimited) as exc:
            limiter.guard("api.example.com")
        assert 0 <= exc.value.remaining_minutes <= 7

    def test_remaining_minutes_rounds_up(self, limiter, registry, clock):
        registry.block("api.example.com", 2)
        clock.advance(119)
        with pytest.raises(RateLimited) as exc:
            limiter.guard("api.example.com")
        assert exc.value.remaining_minutes == 1

    def test_block_ends_at_unblock_time(self, limiter, registry, clock):
        registry.block("api.example.com", 2)
        clock.advance(120)
        assert limiter.guard("api.example.com") is ALLOW

    def test_wait_mode_returns_exact_seconds(self, registry, clock):
        waiting = RateLimiter(registry, wait_on_block=True, clock=clock)
        registry.block("api.example.com", 1)
        clock.advance(15)
        assert waiting.guard("api.example.com") == Wait(45.0)

    def test_429_with_numeric_retry_after(self, limiter, registry):
        limiter.record_status("api.example.com", 429, "900")
        assert registry.get("api.example.com").wait_minutes == 15
        with pytest.raises(RateLimited) as exc:
            limiter.guard("api.example.com")
        assert exc.value.domain == "api.example.com"
        assert exc.value.remaining_minutes == 15

    def test_retry_after_seconds_round_up_to_minutes(self, limiter, registry):
        limiter.record_status("api.example.com", 429, "61")
        assert registry.get("api.example.com").wait_minutes == 2

    @pytest.mark.parametrize("header", [None, "Wed, 21 Oct 2015 07:28:00 GMT", "soon", "0"])
    def test_429_without_usable_retry_after_uses_default(self, limiter, registry, header):
        limiter.record_status("api.example.com", 429, header)
        assert registry.get("api.example.com").wait_minutes == 15

    def test_other_statuses_do_not_block(self, limiter, registry):
        limiter.record_status("api.example.com", 503, "900")
        assert registry.get("api.example.com") is None

    def test_disabled_limiter_never_blocks(self, registry, clock):
        off = RateLimiter(registry, enabled=False, clock=clock)
        off.record_status("api.example.com", 429, "900")
        assert registry.get("api.example.com") is None

"""
Unit tests for the relay BlockRegistry.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_relay.app.protection.block_registry import BlockRegistry
from service_relay.app.protection.rate_tracker import RateTracker


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 1_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


class TestBlockRegistry:
    """Test cases for BlockRegistry."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def tracker(self):
        return RateTracker()

    @pytest.fixture
    def registry(self, tracker, clock):
        """Create BlockRegistry instance."""
        return BlockRegistry(tracker, clock=clock)

    def test_unknown_client_not_blocked(self, registry):
        assert registry.is_blocked("10.0.0.1") is False

    def test_block_marks_client(self, registry, clock):
        entry = registry.block("10.0.0.1", 300_000)

        assert registry.is_blocked("10.0.0.1") is True
        assert entry.blocked_at_ms == clock.now
        assert entry.expires_at_ms == clock.now + 300_000

    def test_block_expires_after_duration(self, registry, tracker, clock):
        """The block lifts once the duration has elapsed and history is cleared."""
        tracker.record("10.0.0.1", clock.now)
        registry.block("10.0.0.1", 300_000)

        clock.advance(299_999)
        assert registry.is_blocked("10.0.0.1") is True

        clock.advance(1)
        assert registry.is_blocked("10.0.0.1") is False
        assert "10.0.0.1" not in tracker

    def test_repeated_block_does_not_extend(self, registry, clock):
        """A second block before expiry keeps the original expiry."""
        first = registry.block("10.0.0.1", 300_000)
        clock.advance(200_000)
        second = registry.block("10.0.0.1", 300_000)

        assert second == first
        clock.advance(100_000)
        assert registry.is_blocked("10.0.0.1") is False

    def test_unblock_clears_history(self, registry, tracker, clock):
        tracker.record("10.0.0.1", clock.now)
        registry.block("10.0.0.1", 300_000)

        assert registry.unblock("10.0.0.1") is True
        assert registry.is_blocked("10.0.0.1") is False
        assert "10.0.0.1" not in tracker

    def test_unblock_is_idempotent(self, registry, tracker, clock):
        """Unblocking twice, or a client never blocked, changes nothing."""
        registry.block("10.0.0.1", 300_000)
        registry.unblock("10.0.0.1")

        assert registry.unblock("10.0.0.1") is False
        assert registry.is_blocked("10.0.0.1") is False

        tracker.record("10.0.0.2", clock.now)
        assert registry.unblock("10.0.0.2") is False
        assert "10.0.0.2" in tracker

    def test_entries_and_len_purge_expired(self, registry, clock):
        registry.block("10.0.0.1", 1_000)
        registry.block("10.0.0.2", 10_000)

        assert len(registry) == 2

        clock.advance(5_000)
        assert len(registry) == 1
        assert [entry.client_id for entry in registry.entries()] == ["10.0.0.2"]

    def test_get_returns_active_entry_only(self, registry, clock):
        registry.block("10.0.0.1", 1_000)

        assert registry.get("10.0.0.1").client_id == "10.0.0.1"
        clock.advance(1_000)
        assert registry.get("10.0.0.1") is None

    def test_zero_duration_block_is_immediately_expired(self, registry):
        registry.block("10.0.0.1", 0)
        assert registry.is_blocked("10.0.0.1") is False

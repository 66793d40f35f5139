"""Unit tests for capped exponential backoff."""

import pytest

from autoserve.reliability.retry import BackoffPolicy, BackoffTracker
from tests.helpers import FakeClock


class TestBackoffPolicy:
    """Test delay calculation."""

    def test_exponential_growth(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=100.0, exponential_base=2.0, jitter=False)

        assert [policy.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert policy.calculate_delay(10) == 5.0

    def test_jitter_stays_within_cap(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, jitter=True)

        for attempt in range(10):
            delay = policy.calculate_delay(attempt)
            assert min(1.0 * 2 ** attempt, 5.0) <= delay <= 5.0


class TestBackoffTracker:
    """Test per-key failure tracking."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def tracker(self, clock):
        return BackoffTracker(BackoffPolicy(base_delay=1.0, max_delay=4.0, jitter=False), clock=clock)

    def test_not_blocked_initially(self, tracker):
        assert not tracker.is_blocked("iris")
        assert tracker.remaining("iris") == 0.0

    def test_blocked_after_failure(self, tracker, clock):
        assert tracker.record_failure("iris", "no capacity") == 1.0
        assert tracker.is_blocked("iris")

        clock.advance(1.0)
        assert not tracker.is_blocked("iris")

    def test_delay_grows_and_caps(self, tracker):
        delays = [tracker.record_failure("iris") for _ in range(5)]

        assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]
        assert tracker.failures("iris") == 5

    def test_success_resets(self, tracker):
        tracker.record_failure("iris")
        tracker.record_failure("iris")
        tracker.record_success("iris")

        assert not tracker.is_blocked("iris")
        assert tracker.record_failure("iris") == 1.0

    def test_keys_independent(self, tracker):
        tracker.record_failure("iris")

        assert tracker.is_blocked("iris")
        assert not tracker.is_blocked("mnist")

    def test_stats(self, tracker):
        tracker.record_failure("iris", "no capacity")
        stats = tracker.get_stats()

        assert stats["iris"]["failures"] == 1
        assert stats["iris"]["last_reason"] == "no capacity"

"""Tests for provider health tracking."""

import pytest

from shared.enums import Channel
from shared.events import ProviderHealthUpdate, ProviderUnhealthy

from notification_core.delivery.health import HealthTracker, ProviderHealth


@pytest.fixture()
def tracker(bus, clock) -> HealthTracker:
    tracker = HealthTracker(Channel.EMAIL, bus, clock, failure_threshold=3, recovery_timeout=300)
    tracker.register("x")
    return tracker


class TestProviderHealth:
    def test_success_rate_defaults_to_one(self) -> None:
        assert ProviderHealth().success_rate == 1.0

    def test_success_rate(self) -> None:
        health = ProviderHealth(total_requests=4, successful_requests=3, failed_requests=1)
        assert health.success_rate == 0.75


class TestHealthTracker:
    def test_unknown_provider_raises(self, tracker: HealthTracker) -> None:
        with pytest.raises(KeyError):
            tracker.get("nope")
        assert tracker.is_healthy("nope") is False

    def test_three_consecutive_failures_flip_unhealthy(
        self, tracker: HealthTracker, published
    ) -> None:
        tracker.record_failure("x", RuntimeError("1"))
        tracker.record_failure("x", RuntimeError("2"))
        assert tracker.is_healthy("x")

        tracker.record_failure("x", RuntimeError("3"))

        assert not tracker.is_healthy("x")
        unhealthy = [e for e in published if isinstance(e, ProviderUnhealthy)]
        assert len(unhealthy) == 1
        assert unhealthy[0].consecutive_failures == 3
        assert unhealthy[0].error == "3"

    def test_unhealthy_event_only_on_transition(
        self, tracker: HealthTracker, published
    ) -> None:
        for _ in range(5):
            tracker.record_failure("x")
        assert sum(isinstance(e, ProviderUnhealthy) for e in published) == 1

    def test_success_resets_and_restores(self, tracker: HealthTracker) -> None:
        for _ in range(3):
            tracker.record_failure("x")

        record = tracker.record_success("x")

        assert record.healthy
        assert record.consecutive_failures == 0
        assert record.total_requests == 4
        assert record.successful_requests == 1

    def test_every_outcome_publishes_update(self, tracker: HealthTracker, published) -> None:
        tracker.record_success("x")
        tracker.record_failure("x")
        updates = [e for e in published if isinstance(e, ProviderHealthUpdate)]
        assert [u.health.total_requests for u in updates] == [1, 2]

    def test_unhealthy_selectable_after_recovery_timeout(
        self, tracker: HealthTracker, clock
    ) -> None:
        for _ in range(3):
            tracker.record_failure("x")
        assert not tracker.is_selectable("x")

        clock.advance(299)
        assert not tracker.is_selectable("x")
        clock.advance(1)
        assert tracker.is_selectable("x")

    def test_no_recovery_without_timeout(self, bus, clock) -> None:
        tracker = HealthTracker(Channel.SMS, bus, clock, recovery_timeout=None)
        tracker.register("x")
        for _ in range(3):
            tracker.record_failure("x")
        clock.advance(10_000)
        assert not tracker.is_selectable("x")

    def test_reset(self, tracker: HealthTracker) -> None:
        for _ in range(3):
            tracker.record_failure("x")
        tracker.reset("x")
        assert tracker.is_healthy("x")
        assert tracker.get("x").consecutive_failures == 0

    def test_snapshot(self, tracker: HealthTracker, clock) -> None:
        tracker.record_success("x")
        snapshot = tracker.snapshot()["x"]
        assert snapshot.healthy
        assert snapshot.last_success_at is not None
        assert snapshot.last_success_at.timestamp() == pytest.approx(clock.now())

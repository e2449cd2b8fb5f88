"""
Unit tests for the usage store, its events and notification thresholds.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from ai_usage_monitor.storage.events import EventKind, StoreEvent, Subscription
from ai_usage_monitor.storage.locks import RWLock
from ai_usage_monitor.storage.models import (
    Account,
    AccountKind,
    CostSnapshot,
    RateWindow,
    UsageSnapshot,
)
from ai_usage_monitor.storage.usage_store import NotificationState, UsageStore


T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
RESET_1 = T0 + timedelta(hours=2)
RESET_2 = T0 + timedelta(hours=7)


def snapshot(fraction: float, resets_at=RESET_1, secondary=None) -> UsageSnapshot:
    return UsageSnapshot(
        primary=RateWindow(used_fraction=fraction, window_length=timedelta(hours=5), resets_at=resets_at),
        secondary=secondary,
        fetched_at=T0,
    )


@pytest.fixture
def store():
    return UsageStore([
        Account("claude", AccountKind.CLAUDE),
        Account("codex", AccountKind.CODEX),
    ])


class TestUpdates:
    """Test state transitions and events."""

    def test_update_snapshot(self, store):
        snap = snapshot(0.2)
        store.update_snapshot("claude", snap, now=T0)
        assert store.snapshot("claude") is snap
        assert store.state("claude").last_fetch_time == T0

    def test_error_keeps_last_good_data(self, store):
        snap = snapshot(0.2)
        cost = CostSnapshot(today_total=1.5)
        store.update_snapshot("claude", snap, now=T0)
        store.update_cost("claude", cost)

        store.set_error("claude", "HTTP 503", now=T0)
        assert store.error("claude") == "HTTP 503"
        assert store.snapshot("claude") is snap
        assert store.cost("claude") is cost

    def test_error_advances_retry(self, store):
        assert store.set_error("claude", "boom", now=T0) == timedelta(seconds=60)
        assert store.set_error("claude", "boom", now=T0) == timedelta(seconds=120)
        assert not store.is_fetch_due("claude", now=T0 + timedelta(seconds=119))
        assert store.is_fetch_due("claude", now=T0 + timedelta(seconds=120))

    def test_success_resets_retry(self, store):
        store.set_error("claude", "boom", now=T0)
        store.update_snapshot("claude", snapshot(0.1), now=T0)
        state = store.state("claude")
        assert state.retry.consecutive_failures == 0
        assert state.last_error is None
        assert store.is_fetch_due("claude", now=T0)

    def test_error_cleared_precedes_update(self, store):
        subscription = store.subscribe()
        store.set_error("claude", "boom", now=T0)
        store.update_snapshot("claude", snapshot(0.1), now=T0)
        store.update_snapshot("claude", snapshot(0.1), now=T0)

        assert subscription.drain() == [
            StoreEvent(EventKind.ERROR_OCCURRED, "claude"),
            StoreEvent(EventKind.ERROR_CLEARED, "claude"),
            StoreEvent(EventKind.USAGE_UPDATED, "claude"),
            StoreEvent(EventKind.USAGE_UPDATED, "claude"),
        ]

    def test_scan_error_lifecycle(self, store):
        subscription = store.subscribe()
        store.update_cost("claude", CostSnapshot(today_total=2.0))
        store.set_scan_error("claude", "Cannot read log directory")

        assert store.scan_error("claude") == "Cannot read log directory"
        assert store.cost("claude").today_total == 2.0
        assert store.cost("claude").log_error
        # Scan failures do not back off remote fetches
        assert store.state("claude").retry.consecutive_failures == 0

        store.update_cost("claude", CostSnapshot(today_total=3.0))
        assert store.scan_error("claude") is None
        assert [event.kind for event in subscription.drain()] == [
            EventKind.COST_UPDATED,
            EventKind.ERROR_OCCURRED,
            EventKind.ERROR_CLEARED,
            EventKind.COST_UPDATED,
        ]

    def test_accounts_are_isolated(self, store):
        store.update_snapshot("codex", snapshot(0.3), now=T0)
        store.set_error("claude", "boom", now=T0)
        store.set_error("claude", "boom", now=T0)

        assert store.error("codex") is None
        assert store.is_fetch_due("codex", now=T0)
        store.update_snapshot("codex", snapshot(0.4), now=T0)
        assert store.snapshot("codex").primary.used_fraction == 0.4

    def test_unknown_account(self, store):
        with pytest.raises(KeyError, match="Unknown account"):
            store.snapshot("gemini")

    def test_register_keeps_existing_state(self, store):
        store.set_error("claude", "boom", now=T0)
        store.register(Account("claude", AccountKind.CLAUDE))
        assert store.error("claude") == "boom"
        assert [account.name for account in store.accounts()] == ["claude", "codex"]

    def test_state_is_a_copy(self, store):
        state = store.state("claude")
        state.last_error = "changed"
        assert store.error("claude") is None


class TestShouldRefresh:
    """Test the user-triggered refresh cooldown."""

    def test_never_fetched(self, store):
        assert store.should_refresh("claude", timedelta(seconds=5), now=T0)

    def test_within_cooldown(self, store):
        store.update_snapshot("claude", snapshot(0.1), now=T0)
        assert not store.should_refresh("claude", timedelta(seconds=5), now=T0 + timedelta(seconds=3))
        assert not store.should_refresh("claude", timedelta(seconds=5), now=T0 + timedelta(seconds=5))
        assert store.should_refresh("claude", timedelta(seconds=5), now=T0 + timedelta(seconds=6))


class TestNotifications:
    """Test the once-per-cycle notification state machine."""

    def test_crossing_notifies_once(self, store):
        assert store.update_snapshot("claude", snapshot(0.5), now=T0) == []
        assert store.update_snapshot("claude", snapshot(0.92), now=T0 + timedelta(minutes=1)) == ["primary"]
        assert store.update_snapshot("claude", snapshot(0.95), now=T0 + timedelta(minutes=2)) == []
        assert store.state("claude").notification["primary"] is NotificationState.NOTIFIED
        assert store.state("claude").notified_for_cycle

    def test_fluctuation_does_not_renotify(self, store):
        store.update_snapshot("claude", snapshot(0.91), now=T0)
        assert store.update_snapshot("claude", snapshot(0.89), now=T0 + timedelta(minutes=1)) == []
        assert store.update_snapshot("claude", snapshot(0.91), now=T0 + timedelta(minutes=2)) == []

    def test_reset_time_passing_rearms(self, store):
        store.update_snapshot("claude", snapshot(0.95), now=T0)

        after_reset = RESET_1 + timedelta(minutes=1)
        assert store.update_snapshot("claude", snapshot(0.05, resets_at=RESET_2), now=after_reset) == []
        assert store.state("claude").notification["primary"] is NotificationState.BELOW

        assert store.update_snapshot("claude", snapshot(0.93, resets_at=RESET_2), now=after_reset) == ["primary"]

    def test_reset_observed_while_already_high(self, store):
        """A new cycle that starts above the threshold is notified again."""
        store.update_snapshot("claude", snapshot(0.95), now=T0)
        after_reset = RESET_1 + timedelta(minutes=1)
        assert store.update_snapshot("claude", snapshot(0.97, resets_at=RESET_2), now=after_reset) == ["primary"]

    def test_reset_marker_change_rearms(self, store):
        def labelled(fraction, label):
            return UsageSnapshot(primary=RateWindow(used_fraction=fraction, reset_label=label))

        store.update_snapshot("claude", labelled(0.95, "Resets Monday"), now=T0)
        assert store.update_snapshot("claude", labelled(0.95, "Resets Monday"), now=T0) == []
        assert store.update_snapshot("claude", labelled(0.95, "Resets Tuesday"), now=T0) == ["primary"]

    def test_reset_time_jitter_is_same_cycle(self, store):
        store.update_snapshot("claude", snapshot(0.95), now=T0)
        jittered = snapshot(0.96, resets_at=RESET_1 + timedelta(seconds=2))
        assert store.update_snapshot("claude", jittered, now=T0 + timedelta(minutes=1)) == []

    def test_windows_tracked_independently(self, store):
        weekly = RateWindow(used_fraction=0.5, resets_at=T0 + timedelta(days=3))
        store.update_snapshot("claude", snapshot(0.95, secondary=weekly), now=T0)

        weekly_high = RateWindow(used_fraction=0.9, resets_at=T0 + timedelta(days=3))
        crossed = store.update_snapshot("claude", snapshot(0.95, secondary=weekly_high), now=T0)
        assert crossed == ["secondary"]

    def test_carve_out_windows(self, store):
        snap = UsageSnapshot(
            primary=RateWindow(used_fraction=0.1),
            carve_outs={"opus": RateWindow(used_fraction=0.9)},
        )
        assert store.update_snapshot("claude", snap, now=T0) == ["opus"]

    def test_threshold_is_per_store(self):
        store = UsageStore([Account("claude", AccountKind.CLAUDE)], notification_threshold=0.5)
        assert store.update_snapshot("claude", snapshot(0.5), now=T0) == ["primary"]

    def test_disabled_notifications(self):
        store = UsageStore([Account("claude", AccountKind.CLAUDE)], notifications_enabled=False)
        assert store.update_snapshot("claude", snapshot(1.0), now=T0) == []

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            UsageStore(notification_threshold=0.0)


class TestSubscription:
    """Test lossy multi-consumer event delivery."""

    def test_multiple_consumers(self, store):
        first, second = store.subscribe(), store.subscribe()
        store.update_cost("claude", CostSnapshot())
        assert first.drain() == second.drain() == [StoreEvent(EventKind.COST_UPDATED, "claude")]

    def test_slow_consumer_drops_oldest(self, store):
        subscription = store.subscribe(maxsize=2)
        store.update_cost("claude", CostSnapshot())
        store.update_cost("codex", CostSnapshot())
        store.set_error("claude", "boom", now=T0)

        assert subscription.dropped == 1
        assert [event.account for event in subscription.drain()] == ["codex", "claude"]

    def test_closed_subscription_stops_receiving(self, store):
        subscription = store.subscribe()
        subscription.close()
        store.update_cost("claude", CostSnapshot())
        assert subscription.drain() == []
        assert subscription.get(timeout=0.01) is None

    def test_get_waits_for_event(self, store):
        subscription = store.subscribe()
        timer = threading.Timer(0.05, store.update_cost, args=("claude", CostSnapshot()))
        timer.start()
        try:
            event = subscription.get(timeout=5)
        finally:
            timer.join()
        assert event == StoreEvent(EventKind.COST_UPDATED, "claude")

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            Subscription(maxsize=0)


class TestRWLock:
    """Test reader-writer exclusion."""

    def test_concurrent_readers(self):
        lock = RWLock()
        both_inside = threading.Barrier(2, timeout=5)

        def reader():
            with lock.read():
                both_inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
        assert not both_inside.broken

    def test_writer_excludes_readers(self):
        lock = RWLock()
        order = []
        lock.acquire_write()

        def reader():
            with lock.read():
                order.append("read")

        thread = threading.Thread(target=reader)
        thread.start()
        thread.join(timeout=0.05)
        order.append("write-done")
        lock.release_write()
        thread.join(timeout=5)

        assert order == ["write-done", "read"]

    def test_concurrent_updates_are_consistent(self, store):
        def worker(name):
            for _ in range(200):
                store.set_error(name, "boom", now=T0)

        threads = [threading.Thread(target=worker, args=(name,)) for name in ("claude", "codex") * 2]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.state("claude").retry.consecutive_failures == 400
        assert store.state("codex").retry.consecutive_failures == 400

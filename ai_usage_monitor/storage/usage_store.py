"""
In-memory store of the latest usage, cost and error state per account.

The store is the only shared mutable state between the polling loops and
readers. Every operation takes the lock for a short, I/O-free update;
network calls and log scans happen before the update is applied.

Events are published while the write lock is held, so for any one account
subscribers see them in the order the updates were applied, and an
ERROR_CLEARED event always directly precedes the update that cleared it.
"""

import copy
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from ai_usage_monitor.config.loader import MonitorConfig
from ai_usage_monitor.core.retry import RetryState

from .events import DEFAULT_BUFFER_SIZE, EventBus, EventKind, Subscription
from .locks import RWLock
from .models import Account, CostSnapshot, RateWindow, UsageSnapshot

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_THRESHOLD = 0.9
# Reset times that move by less than this are the same cycle
RESET_JITTER = timedelta(minutes=1)


class NotificationState(Enum):
    BELOW = "below"
    NOTIFIED = "notified"


@dataclass
class AccountState:
    """Everything the store knows about one account."""
    account: Account
    last_snapshot: Optional[UsageSnapshot] = None
    last_cost: Optional[CostSnapshot] = None
    last_error: Optional[str] = None
    scan_error: Optional[str] = None
    last_fetch_time: Optional[datetime] = None
    retry: RetryState = field(default_factory=RetryState)
    notification: Dict[str, NotificationState] = field(default_factory=dict)

    @property
    def notified_for_cycle(self) -> bool:
        return any(state is NotificationState.NOTIFIED for state in self.notification.values())


def window_has_reset(previous: RateWindow, current: RateWindow, last_seen: Optional[datetime], now: datetime) -> bool:
    """Decide from observed data whether a rate window started a new cycle.

    Args:
        previous: Window as last observed
        current: Window as observed now
        last_seen: When ``previous`` was observed
        now: Current time

    Returns:
        True if the previous reset time was in the future when last seen and
        has passed since, or the window reports a different reset marker
    """
    if previous.resets_at is not None and previous.resets_at <= now:
        if last_seen is None or previous.resets_at > last_seen:
            return True
    return not _same_marker(previous.reset_marker, current.reset_marker)


def _same_marker(a: Optional[object], b: Optional[object]) -> bool:
    if isinstance(a, datetime) and isinstance(b, datetime):
        return abs(a - b) <= RESET_JITTER
    return a == b


class UsageStore:
    """Thread-safe per-account state with change notifications."""

    def __init__(
        self,
        accounts: Optional[List[Account]] = None,
        notification_threshold: float = DEFAULT_NOTIFICATION_THRESHOLD,
        notifications_enabled: bool = True,
    ):
        if not 0.0 < notification_threshold <= 1.0:
            raise ValueError("notification_threshold must be in (0.0, 1.0]")
        self.notification_threshold = notification_threshold
        self.notifications_enabled = notifications_enabled
        self._lock = RWLock()
        self._events = EventBus()
        self._states: Dict[str, AccountState] = {}
        for account in accounts or []:
            self.register(account)

    @classmethod
    def from_config(cls, settings: MonitorConfig) -> "UsageStore":
        """Create a store for every configured account with its notification settings."""
        return cls(
            accounts=list(settings.accounts),
            notification_threshold=settings.notifications.threshold,
            notifications_enabled=settings.notifications.enabled,
        )

    # -------------------------------------------------------------------------
    # Registration and reads
    # -------------------------------------------------------------------------

    def register(self, account: Account) -> None:
        """Add an account; registering an existing name keeps its state."""
        with self._lock.write():
            if account.name not in self._states:
                self._states[account.name] = AccountState(account=account)

    def subscribe(self, maxsize: int = DEFAULT_BUFFER_SIZE) -> Subscription:
        return self._events.subscribe(maxsize)

    def accounts(self) -> List[Account]:
        with self._lock.read():
            return [state.account for state in self._states.values()]

    def snapshot(self, name: str) -> Optional[UsageSnapshot]:
        with self._lock.read():
            return self._get(name).last_snapshot

    def cost(self, name: str) -> Optional[CostSnapshot]:
        with self._lock.read():
            return self._get(name).last_cost

    def error(self, name: str) -> Optional[str]:
        with self._lock.read():
            return self._get(name).last_error

    def scan_error(self, name: str) -> Optional[str]:
        with self._lock.read():
            return self._get(name).scan_error

    def state(self, name: str) -> AccountState:
        """Copy of an account's state, safe to inspect without the lock."""
        with self._lock.read():
            return copy.deepcopy(self._get(name))

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def update_snapshot(self, name: str, snapshot: UsageSnapshot, now: Optional[datetime] = None) -> List[str]:
        """Store a successfully fetched usage snapshot.

        Clears a previous fetch error, resets the backoff and re-evaluates
        notification thresholds.

        Returns:
            Names of the windows that just crossed the notification threshold
        """
        now = now or datetime.now(timezone.utc)
        with self._lock.write():
            state = self._get(name)
            crossed = self._evaluate_notifications(state, snapshot, now)

            state.last_snapshot = snapshot
            state.last_fetch_time = now
            state.retry.record_success()
            if state.last_error is not None:
                state.last_error = None
                self._events.publish(EventKind.ERROR_CLEARED, name)
            self._events.publish(EventKind.USAGE_UPDATED, name)

        if crossed:
            logger.info("%s crossed %.0f%% usage on %s", name, self.notification_threshold * 100, ", ".join(crossed))
        return crossed

    def update_cost(self, name: str, cost: CostSnapshot) -> None:
        with self._lock.write():
            state = self._get(name)
            state.last_cost = cost
            if state.scan_error is not None:
                state.scan_error = None
                self._events.publish(EventKind.ERROR_CLEARED, name)
            self._events.publish(EventKind.COST_UPDATED, name)

    def set_error(self, name: str, message: str, now: Optional[datetime] = None) -> timedelta:
        """Record a failed fetch; the last good snapshot and cost stay visible.

        Returns:
            Delay until the next fetch attempt is due
        """
        now = now or datetime.now(timezone.utc)
        with self._lock.write():
            state = self._get(name)
            state.last_error = message
            delay = state.retry.record_failure(now)
            self._events.publish(EventKind.ERROR_OCCURRED, name)
        return delay

    def set_scan_error(self, name: str, message: str) -> None:
        """Record a failed cost scan without affecting fetch backoff."""
        with self._lock.write():
            state = self._get(name)
            state.scan_error = message
            if state.last_cost is not None:
                state.last_cost = replace(state.last_cost, log_error=True)
            self._events.publish(EventKind.ERROR_OCCURRED, name)

    # -------------------------------------------------------------------------
    # Scheduling queries
    # -------------------------------------------------------------------------

    def should_refresh(self, name: str, cooldown: timedelta, now: Optional[datetime] = None) -> bool:
        """True if more than ``cooldown`` passed since the last successful fetch."""
        now = now or datetime.now(timezone.utc)
        with self._lock.read():
            last_fetch = self._get(name).last_fetch_time
        return last_fetch is None or now - last_fetch > cooldown

    def is_fetch_due(self, name: str, now: Optional[datetime] = None) -> bool:
        """True unless the account is backing off after failures."""
        now = now or datetime.now(timezone.utc)
        with self._lock.read():
            return self._get(name).retry.is_due(now)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get(self, name: str) -> AccountState:
        try:
            return self._states[name]
        except KeyError:
            raise KeyError(f"Unknown account: {name}") from None

    def _evaluate_notifications(self, state: AccountState, snapshot: UsageSnapshot, now: datetime) -> List[str]:
        previous: Dict[str, RateWindow] = dict(state.last_snapshot.windows()) if state.last_snapshot else {}
        notification: Dict[str, NotificationState] = {}
        crossed: List[str] = []

        for window_name, window in snapshot.windows():
            current = state.notification.get(window_name, NotificationState.BELOW)
            before = previous.get(window_name)
            if before is not None and window_has_reset(before, window, state.last_fetch_time, now):
                current = NotificationState.BELOW

            if (
                self.notifications_enabled
                and current is NotificationState.BELOW
                and window.is_high_usage(self.notification_threshold)
            ):
                current = NotificationState.NOTIFIED
                crossed.append(window_name)
            notification[window_name] = current

        state.notification = notification
        return crossed

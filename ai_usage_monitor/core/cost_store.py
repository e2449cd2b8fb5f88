"""
Cost rollups per account.

Runs each account's log scanner over a trailing window derived from the
local calendar, prices the per-day token totals and keeps the latest
CostSnapshot per account. A failed scan keeps the previous snapshot, so one
account's problem never hides another account's numbers.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import date, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ai_usage_monitor.config.loader import MonitorConfig
from ai_usage_monitor.scanners import SCANNERS, LogScanner, ScanError
from ai_usage_monitor.storage.models import Account, CostSnapshot, DailyCost, DailyUsage

from .pricing import PricingDocumentError, cost_of, normalize_cost
from .pricing_resolver import DEFAULT_MAX_AGE, PricingFetchError, PricingResolver, PricingSource

logger = logging.getLogger(__name__)

TRAILING_DAYS = 30


class PricingRefreshResult(Enum):
    """Outcome of a pricing refresh attempt."""
    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    FAILED = "failed"


def scan_window_start(today: date) -> date:
    """First day to scan: covers both the current month and the last 30 days."""
    return min(today.replace(day=1), today - timedelta(days=TRAILING_DAYS - 1))


class CostStore:
    """Scans account logs and keeps the latest cost snapshot per account."""

    def __init__(
        self,
        resolver: PricingResolver,
        scanners: Optional[Dict[str, LogScanner]] = None,
        pricing_max_age: timedelta = DEFAULT_MAX_AGE,
    ):
        """Initialize the cost store.

        Args:
            resolver: Pricing resolver used to price token totals
            scanners: Scanner per account name; created on demand when missing
            pricing_max_age: Age after which pricing is refreshed again
        """
        self.resolver = resolver
        self.pricing_max_age = pricing_max_age
        self._scanners: Dict[str, LogScanner] = dict(scanners or {})
        self._snapshots: Dict[str, CostSnapshot] = {}
        self._errors: Dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, settings: MonitorConfig, resolver: PricingResolver) -> "CostStore":
        return cls(resolver, pricing_max_age=timedelta(hours=settings.polling.pricing_refresh_hours))

    def cached(self, name: str) -> Optional[CostSnapshot]:
        with self._lock:
            return self._snapshots.get(name)

    def last_error(self, name: str) -> Optional[str]:
        with self._lock:
            return self._errors.get(name)

    def refresh_pricing(self, force: bool = False) -> PricingRefreshResult:
        """Refresh the pricing table when it is stale.

        A failure leaves the previously loaded prices in place; scanning
        continues with them.
        """
        if not force and not self.resolver.needs_refresh(self.pricing_max_age):
            return PricingRefreshResult.SKIPPED

        try:
            self.resolver.refresh()
        except (PricingFetchError, PricingDocumentError) as e:
            logger.warning("Pricing refresh failed, using %s prices: %s", self.resolver.source.value, e)
            return PricingRefreshResult.FAILED
        return PricingRefreshResult.REFRESHED

    def scan_one(self, account: Account, today: Optional[date] = None) -> CostSnapshot:
        """Scan one account and replace its snapshot.

        Args:
            account: Account to scan
            today: Local calendar day to treat as today (defaults to the
                scanner's current local date)

        Returns:
            The new CostSnapshot

        Raises:
            ScanError: If the account's logs cannot be read; the previous
                snapshot is kept and marked with ``log_error``
        """
        scanner = self._scanner_for(account)
        today = today or scanner.today()
        roots = list(account.log_roots) or scanner.default_roots()

        try:
            rows = scanner.scan(roots, scan_window_start(today), today)
        except ScanError as e:
            with self._lock:
                self._errors[account.name] = str(e)
                previous = self._snapshots.get(account.name)
                if previous is not None:
                    self._snapshots[account.name] = replace(previous, log_error=True)
            raise

        snapshot = self.build_snapshot(rows, today)
        with self._lock:
            self._snapshots[account.name] = snapshot
            self._errors.pop(account.name, None)

        logger.debug(
            "Scanned %s: today $%.2f, month $%.2f",
            account.name,
            snapshot.today_total,
            snapshot.month_to_date_total,
        )
        return snapshot

    def scan_all(self, accounts: Iterable[Account], today: Optional[date] = None) -> Dict[str, CostSnapshot]:
        """Scan every enabled account; failures are logged and isolated.

        Returns:
            Snapshot per account name, including kept snapshots of failed accounts
        """
        results: Dict[str, CostSnapshot] = {}
        for account in accounts:
            if not account.enabled:
                continue
            try:
                results[account.name] = self.scan_one(account, today)
            except ScanError as e:
                logger.warning("Cost scan failed for %s: %s", account.name, e)
                previous = self.cached(account.name)
                if previous is not None:
                    results[account.name] = previous
        return results

    def build_snapshot(self, rows: Sequence[DailyUsage], today: date) -> CostSnapshot:
        """Price scanned token totals and roll them up relative to ``today``."""
        month_start = today.replace(day=1)
        trailing_start = today - timedelta(days=TRAILING_DAYS - 1)

        today_total = month_total = trailing_total = 0.0
        today_tokens = trailing_tokens = 0
        breakdown: List[DailyCost] = []
        unpriced: Set[str] = set()

        for row in rows:
            pricing = self.resolver.resolve(row.model)
            if pricing is None:
                unpriced.add(row.model)
                cost = 0.0
            else:
                cost = cost_of(row.usage, pricing)
            tokens = row.usage.total_tokens

            if row.date == today:
                today_total += cost
                today_tokens += tokens
            if row.date >= month_start:
                month_total += cost
                breakdown.append(DailyCost(date=row.date, model=row.model, cost=cost, tokens=tokens))
            if row.date >= trailing_start:
                trailing_total += cost
                trailing_tokens += tokens

        if unpriced:
            logger.debug("No pricing for models: %s", ", ".join(sorted(unpriced)))

        return CostSnapshot(
            today_total=normalize_cost(today_total),
            month_to_date_total=normalize_cost(month_total),
            last_30_days_total=normalize_cost(trailing_total),
            today_tokens=today_tokens,
            last_30_days_tokens=trailing_tokens,
            daily_breakdown=tuple(sorted(breakdown, key=lambda c: (c.date, c.model))),
            unpriced_models=tuple(sorted(unpriced)),
            pricing_estimate=self.resolver.source is PricingSource.DEFAULTS,
        )

    def _scanner_for(self, account: Account) -> LogScanner:
        with self._lock:
            scanner = self._scanners.get(account.name)
            if scanner is None:
                scanner = SCANNERS[account.kind]()
                self._scanners[account.name] = scanner
            return scanner


def daily_totals(snapshot: CostSnapshot) -> Dict[date, float]:
    """Sum a snapshot's breakdown per day."""
    totals: Dict[date, float] = defaultdict(float)
    for entry in snapshot.daily_breakdown:
        totals[entry.date] += entry.cost
    return dict(totals)

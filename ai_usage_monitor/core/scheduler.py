"""
Polling scheduler.

Drives three independent activities on asyncio:

- a remote usage fetch per account, on a fixed interval, honouring backoff
- a log scan per account, on a fixed interval
- a pricing refresh, checked periodically and run when the table is stale

Each account gets its own tasks, so a slow fetch for one account never
delays another. Scans and pricing refreshes run in worker threads; the
usage store lock is only taken for the final update.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from ai_usage_monitor.config.loader import MonitorConfig
from ai_usage_monitor.scanners import ScanError
from ai_usage_monitor.storage.models import Account, UsageSnapshot
from ai_usage_monitor.storage.usage_store import UsageStore

from .cost_store import CostStore, PricingRefreshResult

logger = logging.getLogger(__name__)

DEFAULT_FETCH_INTERVAL = 60.0
DEFAULT_SCAN_INTERVAL = 60.0
DEFAULT_REFRESH_COOLDOWN = 5.0
DEFAULT_REQUEST_TIMEOUT = 30.0
PRICING_CHECK_INTERVAL = 3600.0


class FetchError(Exception):
    """Raised by usage fetchers when the vendor API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Network failures, rate limits and server errors are transient."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


UsageFetcher = Callable[[Account], Awaitable[UsageSnapshot]]
NotifyCallback = Callable[[str, List[str]], None]


class PollingScheduler:
    """Runs fetch, scan and pricing loops against a shared UsageStore."""

    def __init__(
        self,
        store: UsageStore,
        cost_store: CostStore,
        fetcher: Optional[UsageFetcher] = None,
        fetch_interval: float = DEFAULT_FETCH_INTERVAL,
        scan_interval: float = DEFAULT_SCAN_INTERVAL,
        refresh_cooldown: float = DEFAULT_REFRESH_COOLDOWN,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        on_notify: Optional[NotifyCallback] = None,
    ):
        """Initialize the scheduler.

        Args:
            store: Store receiving every update
            cost_store: Cost store used for scans and pricing refreshes
            fetcher: Async callable returning the account's usage snapshot
                (None disables remote fetching)
            fetch_interval: Seconds between remote fetches
            scan_interval: Seconds between log scans
            refresh_cooldown: Minimum seconds between user-triggered refreshes
            request_timeout: Seconds before a remote fetch counts as failed
            on_notify: Called with the account name and crossed window names
        """
        self.store = store
        self.cost_store = cost_store
        self.fetcher = fetcher
        self.fetch_interval = fetch_interval
        self.scan_interval = scan_interval
        self.refresh_cooldown = timedelta(seconds=refresh_cooldown)
        self.request_timeout = request_timeout
        self.on_notify = on_notify

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping: Optional[asyncio.Event] = None
        self._fetch_wakeups: Dict[str, asyncio.Event] = {}
        self._scan_wakeups: Dict[str, asyncio.Event] = {}

    @classmethod
    def from_config(
        cls,
        settings: MonitorConfig,
        store: UsageStore,
        cost_store: CostStore,
        fetcher: Optional[UsageFetcher] = None,
        on_notify: Optional[NotifyCallback] = None,
    ) -> "PollingScheduler":
        """Create a scheduler using the configured intervals and timeouts."""
        polling = settings.polling
        return cls(
            store,
            cost_store,
            fetcher=fetcher,
            fetch_interval=polling.fetch_interval,
            scan_interval=polling.scan_interval,
            refresh_cooldown=polling.refresh_cooldown,
            request_timeout=polling.request_timeout,
            on_notify=on_notify,
        )

    # -------------------------------------------------------------------------
    # Single steps
    # -------------------------------------------------------------------------

    async def fetch_once(self, account: Account) -> bool:
        """Fetch one account's usage and record the outcome.

        Returns:
            True if a snapshot was stored
        """
        if self.fetcher is None:
            return False

        try:
            snapshot = await asyncio.wait_for(self.fetcher(account), self.request_timeout)
        except asyncio.TimeoutError:
            message = f"Request timed out after {self.request_timeout:g}s"
        except FetchError as e:
            message = str(e)
        except Exception as e:
            # Fetchers are external; any failure stays scoped to this account
            logger.debug("Fetcher for %s raised", account.name, exc_info=True)
            message = f"{type(e).__name__}: {e}"
        else:
            crossed = self.store.update_snapshot(account.name, snapshot)
            if crossed and self.on_notify is not None:
                self.on_notify(account.name, crossed)
            return True

        delay = self.store.set_error(account.name, message)
        logger.warning(
            "Usage fetch failed for %s: %s (retrying in %ds)",
            account.name,
            message,
            delay.total_seconds(),
        )
        return False

    async def scan_once(self, account: Account) -> bool:
        """Scan one account's logs and record the outcome.

        Returns:
            True if a new cost snapshot was stored
        """
        try:
            cost = await asyncio.to_thread(self.cost_store.scan_one, account)
        except ScanError as e:
            message = str(e)
        except Exception as e:
            # Any failure stays scoped to this account and its loop keeps running
            logger.debug("Scan of %s raised", account.name, exc_info=True)
            message = f"{type(e).__name__}: {e}"
        else:
            self.store.update_cost(account.name, cost)
            return True

        logger.warning("Cost scan failed for %s: %s", account.name, message)
        self.store.set_scan_error(account.name, message)
        return False

    async def refresh_pricing_once(self, force: bool = False) -> PricingRefreshResult:
        return await asyncio.to_thread(self.cost_store.refresh_pricing, force)

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run all loops until ``stop`` is called."""
        self._loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()

        accounts = [account for account in self.store.accounts() if account.enabled]
        self._fetch_wakeups = {account.name: asyncio.Event() for account in accounts}
        self._scan_wakeups = {account.name: asyncio.Event() for account in accounts}

        await asyncio.to_thread(self.cost_store.resolver.load_cache)

        tasks = [asyncio.create_task(self._pricing_loop(), name="pricing")]
        for account in accounts:
            tasks.append(asyncio.create_task(self._fetch_loop(account), name=f"fetch:{account.name}"))
            tasks.append(asyncio.create_task(self._scan_loop(account), name=f"scan:{account.name}"))
        logger.info("Scheduler started for %d accounts", len(accounts))

        try:
            await self._stopping.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._loop = None
            logger.info("Scheduler stopped")

    async def _fetch_loop(self, account: Account) -> None:
        wakeup = self._fetch_wakeups[account.name]
        while True:
            if self.store.is_fetch_due(account.name):
                await self.fetch_once(account)
            await _wait(wakeup, self.fetch_interval)

    async def _scan_loop(self, account: Account) -> None:
        wakeup = self._scan_wakeups[account.name]
        while True:
            await self.scan_once(account)
            await _wait(wakeup, self.scan_interval)

    async def _pricing_loop(self) -> None:
        while True:
            try:
                result = await self.refresh_pricing_once()
            except Exception:
                logger.exception("Pricing refresh check failed")
                result = PricingRefreshResult.FAILED
            if result is PricingRefreshResult.REFRESHED:
                # Re-price with the new table
                for wakeup in self._scan_wakeups.values():
                    wakeup.set()
            await asyncio.sleep(PRICING_CHECK_INTERVAL)

    # -------------------------------------------------------------------------
    # Control, callable from any thread
    # -------------------------------------------------------------------------

    def trigger_refresh(self, name: str) -> bool:
        """Request an immediate fetch and scan for one account.

        Ignored while the account is inside its refresh cooldown or backing
        off after failures.

        Returns:
            True if the refresh was scheduled
        """
        loop = self._loop
        if loop is None or name not in self._fetch_wakeups:
            return False
        if not self.store.should_refresh(name, self.refresh_cooldown):
            logger.debug("Refresh of %s ignored: cooldown", name)
            return False
        if not self.store.is_fetch_due(name):
            logger.debug("Refresh of %s ignored: backing off", name)
            return False

        loop.call_soon_threadsafe(self._wake, name)
        return True

    def trigger_refresh_all(self) -> List[str]:
        """Request a refresh for every account; returns the names scheduled."""
        return [name for name in list(self._fetch_wakeups) if self.trigger_refresh(name)]

    def stop(self) -> None:
        loop, stopping = self._loop, self._stopping
        if loop is not None and stopping is not None:
            loop.call_soon_threadsafe(stopping.set)

    def _wake(self, name: str) -> None:
        self._fetch_wakeups[name].set()
        self._scan_wakeups[name].set()


async def _wait(event: asyncio.Event, timeout: float) -> None:
    """Sleep for ``timeout`` seconds or until ``event`` is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        pass
    event.clear()

"""
Data models for the storage layer.

Defines accounts, cost records and usage snapshots shared between the
scanners, the cost store, the usage store and their consumers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from ai_usage_monitor.core.token_counter import TokenUsage


class AccountKind(Enum):
    """Kind of monitored account; selects the log scanner and default paths."""
    CLAUDE = "claude"
    CODEX = "codex"

    @property
    def display_name(self) -> str:
        return {
            AccountKind.CLAUDE: "Claude Code",
            AccountKind.CODEX: "Codex",
        }[self]


@dataclass(frozen=True)
class Account:
    """One configured vendor identity being monitored."""
    name: str
    kind: AccountKind
    log_roots: Tuple[Path, ...] = ()
    enabled: bool = True

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("account name is required and cannot be empty")


@dataclass(frozen=True)
class DailyUsage:
    """Token totals for one model on one local calendar day."""
    date: date
    model: str
    usage: TokenUsage


@dataclass(frozen=True)
class DailyCost:
    """Priced usage for one model on one local calendar day.

    Consumers sum multiple entries for the same day and model.
    """
    date: date
    model: str
    cost: float
    tokens: int = 0


@dataclass(frozen=True)
class CostSnapshot:
    """Cost rollup for one account, replaced as a whole on every scan."""
    today_total: float = 0.0
    month_to_date_total: float = 0.0
    last_30_days_total: float = 0.0
    today_tokens: int = 0
    last_30_days_tokens: int = 0
    currency: str = "USD"
    daily_breakdown: Tuple[DailyCost, ...] = ()
    unpriced_models: Tuple[str, ...] = ()
    pricing_estimate: bool = False  # only embedded default prices were available
    log_error: bool = False  # latest scan failed; values are from an earlier scan
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RateWindow:
    """Quota consumption for one rate-limit window."""
    used_fraction: float
    window_length: Optional[timedelta] = None
    resets_at: Optional[datetime] = None
    reset_label: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.used_fraction <= 1.0:
            raise ValueError("used_fraction must be between 0.0 and 1.0")

    @property
    def remaining_fraction(self) -> float:
        return 1.0 - self.used_fraction

    def is_high_usage(self, threshold: float) -> bool:
        return self.used_fraction >= threshold

    @property
    def reset_marker(self) -> Optional[object]:
        """Value identifying the current cycle of this window."""
        if self.resets_at is not None:
            return self.resets_at
        return self.reset_label


@dataclass(frozen=True)
class Identity:
    email: Optional[str] = None
    organization: Optional[str] = None
    plan: Optional[str] = None


@dataclass(frozen=True)
class UsageSnapshot:
    """Latest quota state fetched for an account."""
    primary: Optional[RateWindow] = None
    secondary: Optional[RateWindow] = None
    carve_outs: Dict[str, RateWindow] = field(default_factory=dict)
    identity: Identity = field(default_factory=Identity)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def windows(self) -> Iterator[Tuple[str, RateWindow]]:
        """Iterate over all present windows with stable names."""
        if self.primary is not None:
            yield "primary", self.primary
        if self.secondary is not None:
            yield "secondary", self.secondary
        for name in sorted(self.carve_outs):
            yield name, self.carve_outs[name]

    def max_usage(self) -> float:
        return max((window.used_fraction for _, window in self.windows()), default=0.0)

"""
Token counting and usage tracking.

Holds the per-event token counters recovered from session logs.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one accounting event or an aggregate of events.

    Cache writes and cache reads are tracked separately from plain input
    because vendors bill them at different rates.
    """
    input: int = 0
    output: int = 0
    cache_write: int = 0
    cache_read: int = 0

    def __post_init__(self):
        """Validate counters are non-negative."""
        for name in ("input", "output", "cache_write", "cache_read"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens across all kinds."""
        return self.input + self.output + self.cache_write + self.cache_read

    @property
    def is_empty(self) -> bool:
        return self.total_tokens == 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_write=self.cache_write + other.cache_write,
            cache_read=self.cache_read + other.cache_read,
        )

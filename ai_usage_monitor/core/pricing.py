"""
Pricing calculations and rate management.

Holds per-million-token model prices, the embedded default table, the
pricing document parser and the cost computation for token usage.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = 1_000_000

# Provider blocks listing their own models; their prices win over resellers
FIRST_PARTY_PROVIDERS = ("anthropic", "openai")

# models.dev publishes long-context rates under this key
_LONG_CONTEXT_KEY = "context_over_200k"
_LONG_CONTEXT_THRESHOLD = 200_000


class PricingDocumentError(ValueError):
    """Raised when a pricing document does not have a recognizable shape."""


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model.

    The optional tier applies to input and output independently: tokens up
    to ``threshold_tokens`` are billed at the base rate and the remainder at
    the "above" rate. Cache reads and writes are never tiered.
    """
    input_price: float
    output_price: float
    cache_write_price: float = 0.0
    cache_read_price: float = 0.0
    threshold_tokens: Optional[int] = None
    input_price_above: Optional[float] = None
    output_price_above: Optional[float] = None

    def __post_init__(self):
        """Validate prices are non-negative and the tier is coherent."""
        for name in (
            "input_price",
            "output_price",
            "cache_write_price",
            "cache_read_price",
            "input_price_above",
            "output_price_above",
        ):
            value = getattr(self, name)
            if value is None:
                continue
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a non-negative number")

        has_above = self.input_price_above is not None or self.output_price_above is not None
        if self.threshold_tokens is not None:
            if self.threshold_tokens <= 0:
                raise ValueError("threshold_tokens must be > 0")
            if not has_above:
                raise ValueError("tiered pricing needs at least one price above the threshold")
        elif has_above:
            raise ValueError("prices above a threshold require threshold_tokens")

    @property
    def is_tiered(self) -> bool:
        return self.threshold_tokens is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the flat pricing document entry shape."""
        data: Dict[str, Any] = {
            "input_price": self.input_price,
            "output_price": self.output_price,
            "cache_write_price": self.cache_write_price,
            "cache_read_price": self.cache_read_price,
        }
        if self.threshold_tokens is not None:
            data["threshold_tokens"] = self.threshold_tokens
            data["input_price_above"] = self.input_price_above
            data["output_price_above"] = self.output_price_above
        return data


def _tiered_cost(
    tokens: int,
    base_price: float,
    above_price: Optional[float],
    threshold: Optional[int],
) -> float:
    if threshold is not None and above_price is not None and tokens > threshold:
        below = threshold * base_price
        over = (tokens - threshold) * above_price
        return (below + over) / TOKENS_PER_MILLION
    return tokens * base_price / TOKENS_PER_MILLION


def normalize_cost(value: float) -> float:
    """Clamp a cost to be non-negative and turn ``-0.0`` into ``0.0``."""
    if value > 0:
        return value
    return 0.0


def cost_of(usage: TokenUsage, pricing: ModelPricing) -> float:
    """Calculate the USD cost of token usage under a model's pricing.

    Args:
        usage: Token counts to price
        pricing: Model pricing (per million tokens)

    Returns:
        Cost in USD, never negative and never ``-0.0``
    """
    input_cost = _tiered_cost(
        usage.input,
        pricing.input_price,
        pricing.input_price_above,
        pricing.threshold_tokens,
    )
    output_cost = _tiered_cost(
        usage.output,
        pricing.output_price,
        pricing.output_price_above,
        pricing.threshold_tokens,
    )
    cache_cost = (
        usage.cache_write * pricing.cache_write_price
        + usage.cache_read * pricing.cache_read_price
    ) / TOKENS_PER_MILLION

    return normalize_cost(input_cost + output_cost + cache_cost)


# Embedded defaults - used only when neither the remote document nor the cache is available
DEFAULT_PRICES: Dict[str, ModelPricing] = {
    "claude-opus-4-5-20251101": ModelPricing(
        input_price=5.0, output_price=25.0, cache_write_price=6.25, cache_read_price=0.5
    ),
    "claude-sonnet-4-5-20250929": ModelPricing(
        input_price=3.0,
        output_price=15.0,
        cache_write_price=3.75,
        cache_read_price=0.3,
        threshold_tokens=200_000,
        input_price_above=6.0,
        output_price_above=22.5,
    ),
    "claude-sonnet-4-20250514": ModelPricing(
        input_price=3.0,
        output_price=15.0,
        cache_write_price=3.75,
        cache_read_price=0.3,
        threshold_tokens=200_000,
        input_price_above=6.0,
        output_price_above=22.5,
    ),
    "claude-haiku-4-5-20251001": ModelPricing(
        input_price=1.0, output_price=5.0, cache_write_price=1.25, cache_read_price=0.1
    ),
    "claude-3-5-sonnet-20241022": ModelPricing(
        input_price=3.0, output_price=15.0, cache_write_price=3.75, cache_read_price=0.3
    ),
    "claude-3-5-haiku-20241022": ModelPricing(
        input_price=0.80, output_price=4.0, cache_write_price=1.0, cache_read_price=0.08
    ),
    "claude-3-opus-20240229": ModelPricing(
        input_price=15.0, output_price=75.0, cache_write_price=18.75, cache_read_price=1.5
    ),
    "claude-opus-4-20250514": ModelPricing(
        input_price=15.0, output_price=75.0, cache_write_price=18.75, cache_read_price=1.5
    ),
    "claude-opus-4-1-20250805": ModelPricing(
        input_price=15.0, output_price=75.0, cache_write_price=18.75, cache_read_price=1.5
    ),
    "gpt-5": ModelPricing(input_price=1.25, output_price=10.0, cache_read_price=0.125),
    "gpt-5-mini": ModelPricing(input_price=0.25, output_price=2.0, cache_read_price=0.025),
    "gpt-4o": ModelPricing(input_price=2.50, output_price=10.0, cache_read_price=1.25),
    "gpt-4o-mini": ModelPricing(input_price=0.15, output_price=0.60, cache_read_price=0.075),
    "o1": ModelPricing(input_price=15.0, output_price=60.0, cache_read_price=7.5),
    "o3": ModelPricing(input_price=10.0, output_price=40.0, cache_read_price=2.5),
    "o3-mini": ModelPricing(input_price=1.10, output_price=4.40, cache_read_price=0.55),
}


# =============================================================================
# PRICING DOCUMENT PARSING
# =============================================================================


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _flat_entry(data: Dict[str, Any]) -> Optional[ModelPricing]:
    """Entry shaped like ``{"input_price": 3.0, "output_price": 15.0, ...}``."""
    input_price = _number(data.get("input_price"))
    output_price = _number(data.get("output_price"))
    if input_price is None or output_price is None:
        return None

    threshold = data.get("threshold_tokens")
    if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, int)):
        return None

    return ModelPricing(
        input_price=input_price,
        output_price=output_price,
        cache_write_price=_number(data.get("cache_write_price")) or 0.0,
        cache_read_price=_number(data.get("cache_read_price")) or 0.0,
        threshold_tokens=threshold,
        input_price_above=_number(data.get("input_price_above")),
        output_price_above=_number(data.get("output_price_above")),
    )


def _models_dev_entry(cost: Dict[str, Any]) -> Optional[ModelPricing]:
    """Entry shaped like models.dev ``cost`` blocks (already per million)."""
    input_price = _number(cost.get("input"))
    output_price = _number(cost.get("output"))
    if input_price is None or output_price is None:
        return None

    threshold = None
    input_above = None
    output_above = None
    long_context = cost.get(_LONG_CONTEXT_KEY)
    if isinstance(long_context, dict):
        input_above = _number(long_context.get("input"))
        output_above = _number(long_context.get("output"))
        if input_above is not None or output_above is not None:
            threshold = _LONG_CONTEXT_THRESHOLD

    return ModelPricing(
        input_price=input_price,
        output_price=output_price,
        cache_write_price=_number(cost.get("cache_write")) or 0.0,
        cache_read_price=_number(cost.get("cache_read")) or 0.0,
        threshold_tokens=threshold,
        input_price_above=input_above,
        output_price_above=output_above,
    )


def _per_token_entry(pricing: Dict[str, Any]) -> Optional[ModelPricing]:
    """Entry shaped like ``{"input": 3e-06, "output": 1.5e-05}`` (per token)."""
    input_price = _number(pricing.get("input"))
    output_price = _number(pricing.get("output"))
    if input_price is None or output_price is None:
        return None

    cache_write = _number(pricing.get("cache_write")) or 0.0
    cache_read = _number(pricing.get("cache_read")) or 0.0
    return ModelPricing(
        input_price=input_price * TOKENS_PER_MILLION,
        output_price=output_price * TOKENS_PER_MILLION,
        cache_write_price=cache_write * TOKENS_PER_MILLION,
        cache_read_price=cache_read * TOKENS_PER_MILLION,
    )


EntryParser = Callable[[Dict[str, Any]], Optional[ModelPricing]]


def _iter_mapping_entries(data: Dict[str, Any]) -> Iterator[Tuple[str, Optional[EntryParser], Any]]:
    # Stable sort: first-party providers first, the rest in document order
    ordered = sorted(data.items(), key=lambda item: item[0].lower() not in FIRST_PARTY_PROVIDERS)
    for key, value in ordered:
        if not isinstance(value, dict):
            yield key, None, value
            continue

        models = value.get("models")
        if isinstance(models, dict):
            # Provider block: {"anthropic": {"models": {id: {"cost": {...}}}}}
            for model_id, model in models.items():
                cost = model.get("cost") if isinstance(model, dict) else None
                if not isinstance(cost, dict):
                    yield model_id, None, model
                    continue
                yield model_id, _models_dev_entry, cost
        elif "input_price" in value:
            yield key, _flat_entry, value
        elif isinstance(value.get("cost"), dict):
            yield key, _models_dev_entry, value["cost"]
        else:
            yield key, None, value


def _iter_list_entries(data: List[Any]) -> Iterator[Tuple[str, Optional[EntryParser], Any]]:
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str):
            yield "<unnamed>", None, item
            continue
        pricing = item.get("pricing")
        if not isinstance(pricing, dict):
            yield item["id"], None, item
            continue
        yield item["id"], _per_token_entry, pricing


def parse_pricing_document(data: Any) -> Dict[str, ModelPricing]:
    """Parse a pricing document into a model -> pricing mapping.

    Accepted shapes:
    - flat mapping of model id to ``input_price``/``output_price``/... fields
    - provider mapping ``{provider: {"models": {id: {"cost": {...}}}}}``;
      an id listed by several providers takes the first-party price
      (``FIRST_PARTY_PROVIDERS``), else the first provider's
    - list of ``{"id": ..., "pricing": {...}}`` with per-token prices

    Individual entries that do not fit are skipped.

    Args:
        data: Decoded JSON document

    Returns:
        Mapping of lowercase model identifier to ModelPricing

    Raises:
        PricingDocumentError: If the root has no recognizable shape
    """
    if isinstance(data, dict):
        entries = _iter_mapping_entries(data)
    elif isinstance(data, list):
        entries = _iter_list_entries(data)
    else:
        raise PricingDocumentError(
            f"Pricing document root must be an object or array, got {type(data).__name__}"
        )

    prices: Dict[str, ModelPricing] = {}
    skipped = 0
    for model_id, parse_entry, payload in entries:
        entry = None
        if parse_entry is not None:
            try:
                entry = parse_entry(payload)
            except ValueError as e:
                logger.debug("Invalid pricing entry for %s: %s", model_id, e)
        if entry is None:
            skipped += 1
            continue
        # The same id listed by several providers: first occurrence wins
        prices.setdefault(model_id.lower(), entry)

    if not prices:
        raise PricingDocumentError("Pricing document contains no recognizable model prices")

    if skipped:
        logger.debug("Skipped %d unrecognized pricing entries", skipped)
    return prices

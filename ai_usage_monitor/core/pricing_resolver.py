"""
Model pricing resolution with remote, cached and embedded sources.

The resolver serves lookups from an in-memory table built from the most
recent successful source:

1. the remote pricing document (fetched with httpx)
2. the on-disk cache of the last successfully fetched document
3. the embedded default prices

Pricing changes rarely, so once a document was obtained it stays valid
indefinitely; a failed refresh never downgrades a loaded table.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple
from types import MappingProxyType

import httpx

from .model_names import match_model
from .pricing import DEFAULT_PRICES, ModelPricing, PricingDocumentError, parse_pricing_document

logger = logging.getLogger(__name__)

DEFAULT_PRICING_URL = "https://models.dev/api.json"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_AGE = timedelta(hours=24)


class PricingSource(Enum):
    """Where the active pricing table came from."""
    DEFAULTS = "defaults"
    CACHE = "cache"
    REMOTE = "remote"


class PricingFetchError(Exception):
    """Raised when the remote pricing document cannot be retrieved."""


class PricingResolver:
    """Resolves model identifiers to prices through a fallback chain.

    Lookups read the current table by reference; refreshes build a new
    table and swap it in, so readers never observe a partially built one.
    """

    def __init__(
        self,
        cache_path: Optional[Path] = None,
        url: str = DEFAULT_PRICING_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the resolver with embedded defaults loaded.

        Args:
            cache_path: File holding the last fetched document (None disables caching)
            url: Remote pricing document URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.cache_path = Path(cache_path) if cache_path is not None else None
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._refresh_lock = threading.Lock()
        # (prices, match cache) swapped together
        self._table: Tuple[Dict[str, ModelPricing], Dict[str, Optional[str]]] = (
            dict(DEFAULT_PRICES),
            {},
        )
        self._source = PricingSource.DEFAULTS
        self._last_fetch: Optional[datetime] = None

    @property
    def source(self) -> PricingSource:
        return self._source

    @property
    def last_fetch(self) -> Optional[datetime]:
        """When the active document was fetched (None for embedded defaults)."""
        return self._last_fetch

    @property
    def prices(self) -> Mapping[str, ModelPricing]:
        return MappingProxyType(self._table[0])

    def resolve(self, model_id: str) -> Optional[ModelPricing]:
        """Look up pricing for a model identifier.

        Falls back from exact to normalized to fuzzy matching; see
        ``model_names.match_model``.

        Args:
            model_id: Model identifier as found in logs

        Returns:
            ModelPricing or None when nothing matches
        """
        prices, matches = self._table
        if model_id in prices:
            return prices[model_id]

        if model_id not in matches:
            matches[model_id] = match_model(model_id, prices.keys())
        key = matches[model_id]
        return prices[key] if key is not None else None

    def needs_refresh(self, max_age: timedelta = DEFAULT_MAX_AGE, now: Optional[datetime] = None) -> bool:
        """True if no document was ever obtained or it is older than ``max_age``."""
        if self._last_fetch is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self._last_fetch > max_age

    def load_cache(self) -> bool:
        """Load the cached pricing document, if one exists and parses.

        Returns:
            True if the cache was loaded into the active table
        """
        if self.cache_path is None or not self.cache_path.exists():
            return False

        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            prices = parse_pricing_document(data)
            fetched_at = datetime.fromtimestamp(self.cache_path.stat().st_mtime, tz=timezone.utc)
        except (OSError, ValueError) as e:
            # json.JSONDecodeError and PricingDocumentError are ValueErrors
            logger.warning("Ignoring unusable pricing cache %s: %s", self.cache_path, e)
            return False

        self._install(prices, PricingSource.CACHE, fetched_at)
        logger.info("Loaded %d model prices from cache %s", len(prices), self.cache_path)
        return True

    def refresh(self) -> PricingSource:
        """Fetch the remote pricing document and install it.

        On fetch failure the current table is kept when it came from a
        successful source; otherwise the cache is tried, and only when there
        is no usable cache do the embedded defaults remain active.

        Returns:
            PricingSource.REMOTE on success

        Raises:
            PricingFetchError: If the document could not be retrieved (after
                falling back as described above)
            PricingDocumentError: If the fetched document has an unexpected
                shape; the active table and cache are left untouched
        """
        with self._refresh_lock:
            try:
                text = self._fetch()
            except PricingFetchError:
                if self._source is PricingSource.DEFAULTS:
                    self.load_cache()
                raise

            try:
                data = json.loads(text)
            except ValueError as e:
                raise PricingDocumentError(f"Pricing document is not valid JSON: {e}") from e
            prices = parse_pricing_document(data)

            self._install(prices, PricingSource.REMOTE, datetime.now(timezone.utc))
            logger.info("Refreshed %d model prices from %s", len(prices), self.url)
            self._write_cache(text)
            return PricingSource.REMOTE

    def _install(self, prices: Dict[str, ModelPricing], source: PricingSource, fetched_at: datetime) -> None:
        merged = dict(DEFAULT_PRICES)
        merged.update(prices)
        self._table = (merged, {})
        self._source = source
        self._last_fetch = fetched_at

    def _fetch(self) -> str:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(self.url, headers={"Accept": "application/json"})
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            raise PricingFetchError(
                f"Pricing endpoint returned status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise PricingFetchError(f"Failed to fetch pricing from {self.url}: {e}") from e

    def _write_cache(self, text: str) -> None:
        if self.cache_path is None:
            return

        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.cache_path.parent, prefix=".pricing-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp_path, self.cache_path)
            except BaseException:
                os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.warning("Failed to write pricing cache %s: %s", self.cache_path, e)
            return

        logger.debug("Saved pricing cache to %s", self.cache_path)


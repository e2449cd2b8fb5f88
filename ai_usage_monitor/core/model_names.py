"""
Model identifier normalization and best-effort matching.

Vendors rename model identifiers across log format revisions and pricing
sources (provider prefixes, dated snapshots, region prefixes), so lookups
degrade from exact matches to progressively looser ones. Everything here
is pure and independent of where the identifiers come from.
"""

import difflib
import re
from typing import Dict, Iterable, List, Optional

_PREFIXES = (
    "us.",
    "eu.",
    "apac.",
    "anthropic.",
    "anthropic/",
    "openai/",
    "openai.",
    "vertex_ai/",
    "bedrock/",
)
_SUFFIXES = ("-codex", "-latest")

_VERSION_SUFFIX = re.compile(r"-v\d+:\d+$")
_DATE_SUFFIX = re.compile(r"-(\d{8}|\d{4}-\d{2}-\d{2})$")

FUZZY_CUTOFF = 0.85


def normalize_model_name(model: str) -> str:
    """Lowercase a model identifier and strip vendor decorations.

    >>> normalize_model_name("anthropic.claude-3-5-sonnet-20241022-v1:0")
    'claude-3-5-sonnet-20241022'
    >>> normalize_model_name("openai/gpt-4o-codex")
    'gpt-4o'
    """
    name = model.strip().lower()

    stripped = True
    while stripped:
        stripped = False
        for prefix in _PREFIXES:
            if name.startswith(prefix):
                name = name[len(prefix):]
                stripped = True

    # Vertex AI spells snapshots as claude-3-5-sonnet@20240620
    name = name.replace("@", "-")
    name = _VERSION_SUFFIX.sub("", name)

    for suffix in _SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]

    return name


def strip_date_suffix(model: str) -> str:
    """Remove a trailing ``-YYYYMMDD`` or ``-YYYY-MM-DD`` snapshot date."""
    return _DATE_SUFFIX.sub("", model)


def _shortest(candidates: List[str]) -> Optional[str]:
    # candidates arrive sorted, so ties resolve alphabetically
    return min(candidates, key=len) if candidates else None


def _longest(candidates: List[str]) -> Optional[str]:
    return max(candidates, key=len) if candidates else None


def _contains_token(haystack: str, needle: str) -> bool:
    pattern = r"(?:^|[-/.])" + re.escape(needle) + r"(?:$|[-.:])"
    return re.search(pattern, haystack) is not None


def match_model(model: str, known: Iterable[str]) -> Optional[str]:
    """Find the known identifier that best matches ``model``.

    Matching order:
    1. exact match
    2. exact match after normalization
    3. same model with the snapshot date ignored, then a dated snapshot of
       the requested base name (shortest wins)
    4. token-bounded containment in either direction (most specific wins)
    5. close string match via difflib

    Args:
        model: Identifier as found in a log or request
        known: Identifiers available in the pricing table

    Returns:
        The matching identifier from ``known`` or None
    """
    keys = sorted(set(known))
    if not keys or not model:
        return None
    if model in keys:
        return model

    # normalized form -> original key, first key wins for determinism
    by_normalized: Dict[str, str] = {}
    for key in keys:
        by_normalized.setdefault(normalize_model_name(key), key)

    normalized = normalize_model_name(model)
    if normalized in by_normalized:
        return by_normalized[normalized]

    base = strip_date_suffix(normalized)
    same_base = [k for k in by_normalized if strip_date_suffix(k) == base]
    match = _shortest(same_base)
    if match is None:
        match = _shortest([k for k in by_normalized if k.startswith(base + "-")])
    if match is not None:
        return by_normalized[match]

    match = _longest([k for k in by_normalized if _contains_token(normalized, k)])
    if match is None:
        match = _shortest([k for k in by_normalized if _contains_token(k, normalized)])
    if match is not None:
        return by_normalized[match]

    close = difflib.get_close_matches(normalized, list(by_normalized), n=1, cutoff=FUZZY_CUTOFF)
    if close:
        return by_normalized[close[0]]
    return None

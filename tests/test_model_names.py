"""
Unit tests for model identifier normalization and matching.
"""

import pytest

from ai_usage_monitor.core.model_names import match_model, normalize_model_name, strip_date_suffix
from ai_usage_monitor.core.pricing import DEFAULT_PRICES


KNOWN = list(DEFAULT_PRICES)


class TestNormalizeModelName:
    """Test stripping of vendor decorations."""

    @pytest.mark.parametrize("raw, expected", [
        ("claude-sonnet-4-5-20250929", "claude-sonnet-4-5-20250929"),
        ("Claude-Sonnet-4-5", "claude-sonnet-4-5"),
        ("anthropic.claude-3-5-sonnet-20241022-v2:0", "claude-3-5-sonnet-20241022"),
        ("us.anthropic.claude-opus-4-20250514-v1:0", "claude-opus-4-20250514"),
        ("anthropic/claude-haiku-4-5", "claude-haiku-4-5"),
        ("vertex_ai/claude-3-5-sonnet@20241022", "claude-3-5-sonnet-20241022"),
        ("openai/gpt-5-codex", "gpt-5"),
        ("gpt-4o-latest", "gpt-4o"),
        ("  GPT-5  ", "gpt-5"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_model_name(raw) == expected

    def test_strip_date_suffix(self):
        assert strip_date_suffix("claude-opus-4-20250514") == "claude-opus-4"
        assert strip_date_suffix("gpt-4o-mini-2024-07-18") == "gpt-4o-mini"
        assert strip_date_suffix("o3-mini") == "o3-mini"


class TestMatchModel:
    """Test the fallback order of model matching."""

    def test_exact_match(self):
        assert match_model("gpt-5", KNOWN) == "gpt-5"

    def test_normalized_match(self):
        assert match_model("anthropic.claude-opus-4-5-20251101-v1:0", KNOWN) == "claude-opus-4-5-20251101"

    def test_undated_alias_matches_snapshot(self):
        assert match_model("claude-sonnet-4-5", KNOWN) == "claude-sonnet-4-5-20250929"
        assert match_model("claude-opus-4", KNOWN) == "claude-opus-4-20250514"

    def test_different_snapshot_date_matches_base(self):
        assert match_model("claude-haiku-4-5-20990101", KNOWN) == "claude-haiku-4-5-20251001"
        assert match_model("gpt-4o-mini-2024-07-18", KNOWN) == "gpt-4o-mini"

    def test_codex_variant_matches_base_model(self):
        assert match_model("gpt-5-codex", KNOWN) == "gpt-5"

    def test_containment_prefers_most_specific(self):
        """A point release falls back to the closest known family."""
        assert match_model("gpt-5.1", KNOWN) == "gpt-5"
        assert match_model("gpt-5-mini.2", KNOWN) == "gpt-5-mini"

    def test_close_match(self):
        assert match_model("gpt-4o-minl", ["gpt-4o-mini", "o3"]) == "gpt-4o-mini"

    def test_unknown_model(self):
        assert match_model("totally-unknown-model", KNOWN) is None

    def test_empty_inputs(self):
        assert match_model("", KNOWN) is None
        assert match_model("gpt-5", []) is None

    def test_deterministic(self):
        """The same inputs in any order give the same answer."""
        assert match_model("claude-sonnet-4", KNOWN) == match_model("claude-sonnet-4", list(reversed(KNOWN)))

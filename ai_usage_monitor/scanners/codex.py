"""
Codex CLI session log scanner.

Codex stores sessions as ``sessions/YYYY/MM/DD/rollout-*.jsonl``. Token
usage is reported as cumulative counters on ``token_count`` events, so the
scanner emits the difference between consecutive readings. When a counter
goes backwards the session was reset and the new reading is the baseline.
"""

import os
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ai_usage_monitor.core.model_names import normalize_model_name
from ai_usage_monitor.core.token_counter import TokenUsage
from ai_usage_monitor.storage.models import AccountKind

from .base import UNKNOWN_MODEL, LogScanner, Unrecognized, UsageEvent, parse_timestamp, token_count


@dataclass(frozen=True)
class CumulativeTotals:
    """Running token totals reported by Codex for a session."""
    input: int = 0
    cached_input: int = 0
    output: int = 0

    def any_decreased(self, previous: "CumulativeTotals") -> bool:
        return (
            self.input < previous.input
            or self.cached_input < previous.cached_input
            or self.output < previous.output
        )


@dataclass(frozen=True)
class SessionMeta:
    session_id: str


@dataclass(frozen=True)
class TurnContext:
    model: str


@dataclass(frozen=True)
class TokenCount:
    timestamp: Optional[datetime]
    model: Optional[str]
    totals: CumulativeTotals


CodexRecord = Union[SessionMeta, TurnContext, TokenCount, Unrecognized]


def _non_empty_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def classify_record(record: Dict[str, Any]) -> CodexRecord:
    """Map a decoded log line onto a known record shape."""
    kind = record.get("type")
    payload = record.get("payload")
    if not isinstance(payload, dict):
        return Unrecognized("record without payload")

    if kind == "session_meta":
        session_id = _non_empty_str(payload.get("id"))
        if session_id is None:
            return Unrecognized("session_meta without id")
        return SessionMeta(session_id)

    if kind == "turn_context":
        model = _non_empty_str(payload.get("model"))
        if model is None:
            return Unrecognized("turn_context without model")
        return TurnContext(model)

    if kind == "event_msg" and payload.get("type") == "token_count":
        info = payload.get("info")
        if not isinstance(info, dict):
            return Unrecognized("token_count without info")
        usage = info.get("total_token_usage")
        if not isinstance(usage, dict):
            return Unrecognized("token_count without total_token_usage")

        cached = usage.get("cached_input_tokens")
        if cached is None:
            cached = usage.get("cache_read_input_tokens")
        try:
            totals = CumulativeTotals(
                input=token_count(usage.get("input_tokens")),
                cached_input=token_count(cached),
                output=token_count(usage.get("output_tokens")),
            )
        except ValueError as e:
            return Unrecognized(str(e))

        model = _non_empty_str(info.get("model")) or _non_empty_str(info.get("model_name"))
        return TokenCount(
            timestamp=parse_timestamp(record.get("timestamp")),
            model=model,
            totals=totals,
        )

    return Unrecognized(f"unhandled record type {kind!r}")


def usage_delta(current: CumulativeTotals, previous: Optional[CumulativeTotals]) -> TokenUsage:
    """Token usage between two cumulative readings.

    A missing previous reading, or any counter going backwards, makes the
    current reading the baseline. Cached input is part of input in Codex
    counters and is split out so it can be billed at cache-read rates.
    """
    if previous is None or current.any_decreased(previous):
        previous = CumulativeTotals()

    delta_input = current.input - previous.input
    delta_cached = min(current.cached_input - previous.cached_input, delta_input)
    delta_output = current.output - previous.output
    return TokenUsage(
        input=delta_input - delta_cached,
        output=delta_output,
        cache_read=delta_cached,
    )


@dataclass
class _CodexFileState:
    session_id: str
    file_date: Optional[date]
    current_model: Optional[str] = None
    last_totals: Dict[Tuple[str, str], CumulativeTotals] = field(default_factory=dict)


class CodexScanner(LogScanner):
    """Delta accounting over Codex CLI session logs."""

    kind = AccountKind.CODEX

    @staticmethod
    def default_roots() -> List[Path]:
        codex_home = os.environ.get("CODEX_HOME")
        base = Path(codex_home) if codex_home else Path.home() / ".codex"
        return [base / "sessions"]

    def date_from_path(self, path: Path) -> Optional[date]:
        """Date from the ``YYYY/MM/DD`` directories above the file."""
        parts = path.parts
        if len(parts) < 4:
            return None
        year, month, day = parts[-4], parts[-3], parts[-2]
        if not (len(year) == 4 and year.isdigit() and month.isdigit() and day.isdigit()):
            return None
        try:
            return date(int(year), int(month), int(day))
        except ValueError:
            return None

    def new_file_state(self, path: Path) -> _CodexFileState:
        return _CodexFileState(session_id=str(path), file_date=self.date_from_path(path))

    def handle_record(self, record: Dict[str, Any], state: _CodexFileState) -> Optional[UsageEvent]:
        parsed = classify_record(record)

        if isinstance(parsed, SessionMeta):
            state.session_id = parsed.session_id
            return None
        if isinstance(parsed, TurnContext):
            state.current_model = parsed.model
            return None
        if not isinstance(parsed, TokenCount):
            return None

        raw_model = parsed.model or state.current_model
        model = normalize_model_name(raw_model) if raw_model else UNKNOWN_MODEL

        key = (state.session_id, model)
        delta = usage_delta(parsed.totals, state.last_totals.get(key))
        state.last_totals[key] = parsed.totals

        if delta.is_empty:
            return None

        if state.file_date is not None:
            day = state.file_date
        elif parsed.timestamp is not None:
            day = self.local_date(parsed.timestamp)
        else:
            return None

        return UsageEvent(date=day, model=model, usage=delta)

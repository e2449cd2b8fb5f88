"""
Claude Code session log scanner.

Claude Code writes one JSON object per line under ``~/.claude/projects``.
Assistant lines carry the token usage of one exchange. Streaming writes the
same exchange several times, so lines are deduplicated on the message id
and request id pair.
"""

import os
import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ai_usage_monitor.core.model_names import normalize_model_name
from ai_usage_monitor.core.token_counter import TokenUsage
from ai_usage_monitor.storage.models import AccountKind

from .base import UNKNOWN_MODEL, LogScanner, Unrecognized, UsageEvent, parse_timestamp, token_count

_DATE_FILE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


@dataclass(frozen=True)
class AssistantUsage:
    """An assistant message line reporting token usage."""
    timestamp: datetime
    model: Optional[str]
    message_id: Optional[str]
    request_id: Optional[str]
    usage: TokenUsage

    @property
    def dedup_key(self) -> Optional[str]:
        if not self.message_id and not self.request_id:
            return None
        return f"{self.message_id or ''}:{self.request_id or ''}"


ClaudeRecord = Union[AssistantUsage, Unrecognized]


def classify_record(record: Dict[str, Any]) -> ClaudeRecord:
    """Map a decoded log line onto a known record shape."""
    if record.get("type") != "assistant":
        return Unrecognized("not an assistant message")

    message = record.get("message")
    if not isinstance(message, dict):
        return Unrecognized("assistant line without message")
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return Unrecognized("assistant message without usage")

    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        return Unrecognized("missing or invalid timestamp")

    try:
        tokens = TokenUsage(
            input=token_count(usage.get("input_tokens")),
            output=token_count(usage.get("output_tokens")),
            cache_write=token_count(usage.get("cache_creation_input_tokens")),
            cache_read=token_count(usage.get("cache_read_input_tokens")),
        )
    except ValueError as e:
        return Unrecognized(str(e))

    model = message.get("model")
    message_id = message.get("id")
    request_id = record.get("requestId")
    return AssistantUsage(
        timestamp=timestamp,
        model=model if isinstance(model, str) and model else None,
        message_id=message_id if isinstance(message_id, str) else None,
        request_id=request_id if isinstance(request_id, str) else None,
        usage=tokens,
    )


@dataclass
class _ClaudeFileState:
    file_date: Optional[date]


class ClaudeScanner(LogScanner):
    """Per-event accounting over Claude Code project logs."""

    kind = AccountKind.CLAUDE

    @staticmethod
    def default_roots() -> List[Path]:
        roots = [Path.home() / ".claude" / "projects"]
        config_home = os.environ.get("XDG_CONFIG_HOME")
        config_dir = Path(config_home) if config_home else Path.home() / ".config"
        roots.append(config_dir / "claude" / "projects")
        return roots

    def date_from_path(self, path: Path) -> Optional[date]:
        """Date from files named like ``2026-01-18.jsonl``."""
        match = _DATE_FILE.match(path.stem)
        if match is None:
            return None
        try:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None

    def new_file_state(self, path: Path) -> _ClaudeFileState:
        return _ClaudeFileState(file_date=self.date_from_path(path))

    def handle_record(self, record: Dict[str, Any], state: _ClaudeFileState) -> Optional[UsageEvent]:
        parsed = classify_record(record)
        if isinstance(parsed, Unrecognized):
            return None

        day = state.file_date or self.local_date(parsed.timestamp)
        model = normalize_model_name(parsed.model) if parsed.model else UNKNOWN_MODEL
        return UsageEvent(
            date=day,
            model=model,
            usage=parsed.usage,
            dedup_key=parsed.dedup_key,
        )

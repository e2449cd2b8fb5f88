"""
Session log scanners, one per account kind.
"""

from typing import Dict, Type

from ai_usage_monitor.storage.models import AccountKind

from .base import LogScanner, ScanError, UsageEvent
from .claude import ClaudeScanner
from .codex import CodexScanner

SCANNERS: Dict[AccountKind, Type[LogScanner]] = {
    AccountKind.CLAUDE: ClaudeScanner,
    AccountKind.CODEX: CodexScanner,
}

__all__ = ["ClaudeScanner", "CodexScanner", "LogScanner", "ScanError", "UsageEvent", "SCANNERS"]

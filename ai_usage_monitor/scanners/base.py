"""
Shared machinery for scanning append-only JSONL session logs.

A scanner walks one or more root directories, reads every ``*.jsonl``
file line by line and turns recognized records into UsageEvents. Lines
that are not JSON, or JSON of an unexpected shape, are skipped without
affecting the rest of the file.

Files are read incrementally: the byte offset reached and the per-file
parser state are remembered, so a later scan only reads what was appended
since. A file that shrank or was replaced is read again from the start.
"""

import json
import logging
import os
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from stat import S_ISDIR
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ai_usage_monitor.core.token_counter import TokenUsage
from ai_usage_monitor.storage.models import AccountKind, DailyUsage

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"
UNKNOWN_MODEL = "unknown"


class ScanError(Exception):
    """Raised when a log root cannot be read."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class UsageEvent:
    """Token usage attributed to one day and model."""
    date: date
    model: str
    usage: TokenUsage
    dedup_key: Optional[str] = None


@dataclass(frozen=True)
class Unrecognized:
    """A JSON record that does not match any known shape."""
    reason: str


@dataclass
class _FileProgress:
    mtime_ns: int
    size: int
    offset: int
    state: Any
    events: List[UsageEvent] = field(default_factory=list)
    # Events dated before this day have been dropped
    retained_since: Optional[date] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def token_count(value: Any) -> int:
    """Coerce a token counter field; missing counts as zero.

    Raises:
        ValueError: If the value is not a non-negative whole number
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid token count: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"invalid token count: {value!r}")
    return value


def _raise_scan_error(error: OSError) -> None:
    raise ScanError(f"Cannot read log directory {error.filename}: {error.strerror}", error.filename)


class LogScanner:
    """Base class for per-account-kind log scanners.

    Subclasses provide ``new_file_state``, ``handle_record`` and optionally
    ``date_from_path``; the base class owns enumeration, incremental reads,
    deduplication and aggregation.
    """

    kind: AccountKind

    def __init__(self, tz: Optional[tzinfo] = None):
        """Initialize the scanner.

        Args:
            tz: Timezone used to turn event timestamps into calendar days
                (None means the system local timezone)
        """
        self.tz = tz
        self._progress: Dict[Path, _FileProgress] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def new_file_state(self, path: Path) -> Any:
        """Create the parser state carried across the lines of one file."""
        raise NotImplementedError

    def handle_record(self, record: Dict[str, Any], state: Any) -> Optional[UsageEvent]:
        """Consume one decoded JSON object; return an event if it reports usage."""
        raise NotImplementedError

    def date_from_path(self, path: Path) -> Optional[date]:
        """Calendar day encoded in the storage layout, if any."""
        return None

    @staticmethod
    def default_roots() -> List[Path]:
        """Log roots used when an account configures none."""
        return []

    # -------------------------------------------------------------------------
    # Scanning
    # -------------------------------------------------------------------------

    def local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def today(self) -> date:
        return datetime.now(self.tz).date()

    def scan(
        self,
        root_paths: Iterable[Path],
        since: date,
        until: Optional[date] = None,
    ) -> List[DailyUsage]:
        """Scan log roots and aggregate usage per day and model.

        Args:
            root_paths: Directories to search recursively
            since: First calendar day to include
            until: Last calendar day to include (defaults to today)

        Returns:
            One DailyUsage per (date, model), ordered by date then model

        Raises:
            ScanError: If a root or one of its files cannot be read
        """
        until = until or self.today()
        with self._lock:
            files = self.find_log_files(root_paths, since, until)
            logger.debug("%s scanner found %d log files", self.kind.value, len(files))

            events: List[UsageEvent] = []
            for path in files:
                events.extend(self._read_events(path, since))

            # Forget files that disappeared
            seen = set(files)
            for stale in [p for p in self._progress if p not in seen]:
                del self._progress[stale]

        return aggregate_events(events, since, until)

    def find_log_files(self, root_paths: Iterable[Path], since: date, until: date) -> List[Path]:
        """List log files under the roots, pruning files dated outside the range."""
        files: List[Path] = []
        for root in root_paths:
            root = Path(root).expanduser()
            try:
                root_stat = root.stat()
            except (FileNotFoundError, NotADirectoryError):
                logger.debug("Log root %s does not exist, skipping", root)
                continue
            except OSError as e:
                raise ScanError(f"Cannot access log root {root}: {e}", root) from e
            if not S_ISDIR(root_stat.st_mode):
                raise ScanError(f"Log root {root} is not a directory", root)

            for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_scan_error):
                dirnames.sort()
                for name in sorted(filenames):
                    if not name.endswith(LOG_SUFFIX):
                        continue
                    path = Path(dirpath) / name
                    file_date = self.date_from_path(path)
                    if file_date is not None and not since <= file_date <= until:
                        continue
                    files.append(path)
        return files

    def _read_events(self, path: Path, since: date) -> List[UsageEvent]:
        try:
            stat = path.stat()
        except FileNotFoundError:
            logger.debug("Log file %s vanished during scan", path)
            return []
        except OSError as e:
            raise ScanError(f"Cannot stat log file {path}: {e}", path) from e

        progress = self._progress.get(path)
        if progress is not None and progress.retained_since is not None and since < progress.retained_since:
            logger.debug("Scan range of %s widened, rereading", path)
            progress = None
        if progress is not None:
            unchanged = progress.mtime_ns == stat.st_mtime_ns and progress.size == stat.st_size
            if unchanged:
                _retain(progress, since)
                return progress.events
            if stat.st_size < progress.offset:
                logger.debug("Log file %s shrank, rereading", path)
                progress = None

        if progress is None:
            progress = _FileProgress(
                mtime_ns=stat.st_mtime_ns,
                size=stat.st_size,
                offset=0,
                state=self.new_file_state(path),
            )

        try:
            self._consume(path, progress)
        except FileNotFoundError:
            logger.debug("Log file %s vanished during scan", path)
            self._progress.pop(path, None)
            return []
        except OSError as e:
            raise ScanError(f"Cannot read log file {path}: {e}", path) from e

        progress.mtime_ns = stat.st_mtime_ns
        progress.size = stat.st_size
        _retain(progress, since)
        self._progress[path] = progress
        return progress.events

    def _consume(self, path: Path, progress: _FileProgress) -> None:
        skipped = 0
        with open(path, "rb") as f:
            f.seek(progress.offset)
            for raw in f:
                complete = raw.endswith(b"\n")
                text = raw.decode("utf-8", errors="replace").strip()
                if not text:
                    if complete:
                        progress.offset += len(raw)
                    continue

                try:
                    record = json.loads(text)
                except ValueError:
                    if not complete:
                        # Possibly still being written; retry on the next scan
                        break
                    progress.offset += len(raw)
                    skipped += 1
                    continue

                progress.offset += len(raw)
                if not isinstance(record, dict):
                    skipped += 1
                    continue

                try:
                    event = self.handle_record(record, progress.state)
                except (AttributeError, KeyError, TypeError, ValueError):
                    # Recognized record type with fields of the wrong shape
                    skipped += 1
                    continue
                if event is not None:
                    progress.events.append(event)

        if skipped:
            logger.debug("Skipped %d malformed lines in %s", skipped, path)


def _retain(progress: _FileProgress, since: date) -> None:
    """Drop remembered events dated before ``since``."""
    progress.events = [event for event in progress.events if event.date >= since]
    progress.retained_since = since


def aggregate_events(events: Sequence[UsageEvent], since: date, until: date) -> List[DailyUsage]:
    """Sum events per (date, model) within the range.

    Events sharing a dedup key count once: the first occurrence wins.
    """
    seen_keys: Set[str] = set()
    totals: Dict[Tuple[date, str], TokenUsage] = defaultdict(TokenUsage)

    for event in events:
        if event.dedup_key is not None:
            if event.dedup_key in seen_keys:
                continue
            seen_keys.add(event.dedup_key)

        if not since <= event.date <= until:
            continue
        key = (event.date, event.model)
        totals[key] = totals[key] + event.usage

    return [
        DailyUsage(date=day, model=model, usage=usage)
        for (day, model), usage in sorted(totals.items())
    ]

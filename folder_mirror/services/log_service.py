"""Structured event log for scan, upload and cycle events.

Each event is one JSON object per line in a daily file partitioned the hive
way (json/year=YYYY/month=MM/day=DD/events.jsonl), so the whole history can be
queried with DuckDB:

    SELECT * FROM read_json_auto('logs/json/**/events.jsonl', hive_partitioning=true)
"""

import json
import logging
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from folder_mirror.config import get_settings

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"


def partition_dir(base: Path, day: datetime) -> Path:
    """Directory holding the events of one day under base/json."""
    return base / "json" / f"year={day.year:04d}" / f"month={day.month:02d}" / f"day={day.day:02d}"


class LogService:
    """Appends sync events to the daily JSONL file; safe to call from workers."""

    def __init__(self, log_dir: Path | None = None) -> None:
        """Initialize the log service.

        Args:
            log_dir: Directory for event files; defaults to the configured log_directory
        """
        self._log_dir = log_dir
        self._write_lock = threading.Lock()

    @property
    def log_dir(self) -> Path:
        if self._log_dir is not None:
            return self._log_dir
        return get_settings().log_directory

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append one event to today's file.

        A failed write is reported through the module logger and never raised.

        Args:
            level: INFO, WARNING or ERROR
            category: app, scan, upload, cycle or ledger
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data; values json cannot encode are
                written with str()
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
            "thread": threading.current_thread().name,
        }
        if metadata:
            entry["metadata"] = metadata
        line = json.dumps(entry, default=str) + "\n"

        target = partition_dir(self.log_dir, now)
        with self._write_lock:
            try:
                target.mkdir(parents=True, exist_ok=True)
                with open(target / EVENTS_FILE, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                logger.warning("Could not write %s event to %s", event, target, exc_info=True)

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("ERROR", category, event, message, metadata)

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        limit: int = 100,
        event: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read events matching all given filters, newest first.

        Args:
            date: Only this day (YYYY-MM-DD); an unparsable date matches nothing
            level: Only this level, case-insensitive
            category: Only this category
            limit: Maximum number of entries returned
            event: Only this event name

        Returns:
            Matching entries sorted by timestamp descending
        """
        wanted_level = level.upper() if level else None
        matched = [
            entry
            for entry in self._iter_entries(date)
            if (wanted_level is None or str(entry.get("level", "")).upper() == wanted_level)
            and (category is None or entry.get("category") == category)
            and (event is None or entry.get("event") == event)
        ]
        matched.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return matched[:limit]

    def _event_files(self, day: str | None) -> list[Path]:
        if day:
            try:
                parsed = datetime.strptime(day, "%Y-%m-%d")
            except ValueError:
                return []
            path = partition_dir(self.log_dir, parsed) / EVENTS_FILE
            return [path] if path.exists() else []

        json_dir = self.log_dir / "json"
        if not json_dir.exists():
            return []
        return sorted(json_dir.rglob(EVENTS_FILE), reverse=True)

    def _iter_entries(self, day: str | None) -> Iterator[dict[str, Any]]:
        for path in self._event_files(day):
            try:
                with open(path, encoding="utf-8") as f:
                    lines = f.readlines()
            except OSError:
                logger.warning("Could not read event file %s", path, exc_info=True)
                continue
            for line in lines:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping corrupt event line in %s", path)


# Module-level singleton accessor
_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service

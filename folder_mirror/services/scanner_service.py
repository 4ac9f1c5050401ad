"""Scan the source tree for files that are ready to upload."""

import logging
import os
import stat
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from folder_mirror.services.log_service import get_log_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateFile:
    """A file found eligible for upload in the current cycle."""

    path: str
    size: int
    mtime: int  # ms since epoch


@dataclass(frozen=True)
class HotFileRule:
    """Excludes files that may still be written by another process.

    A file is hot when its name ends in one of the extensions (case-insensitive)
    and it was modified less than quarantine_seconds ago.
    """

    extensions: tuple[str, ...] = (".xml",)
    quarantine_seconds: float = 3600

    def is_hot(self, name: str, mtime: int, now: float) -> bool:
        if not self.extensions:
            return False
        lowered = name.lower()
        if not any(lowered.endswith(ext.lower()) for ext in self.extensions):
            return False
        return now * 1000 - mtime < self.quarantine_seconds * 1000


def mtime_millis(stat_result: os.stat_result) -> int:
    """Modification time of a stat result in whole milliseconds."""
    return stat_result.st_mtime_ns // 1_000_000


class _MarkerLookup:
    """Memoized "does this directory or an ancestor up to root hold the marker" test."""

    def __init__(self, root: str, marker_file_name: str) -> None:
        self.root = os.path.normpath(root)
        self.marker_file_name = marker_file_name
        self._ready: dict[str, bool] = {}

    def is_ready(self, directory: str) -> bool:
        directory = os.path.normpath(directory)
        cached = self._ready.get(directory)
        if cached is not None:
            return cached

        if os.path.isfile(os.path.join(directory, self.marker_file_name)):
            ready = True
        elif directory == self.root:
            ready = False
        else:
            parent = os.path.dirname(directory)
            ready = parent != directory and self.is_ready(parent)

        self._ready[directory] = ready
        return ready


def scan_ready_files(
    root: str | Path,
    marker_file_name: str | None = None,
    hot_rule: HotFileRule | None = None,
    clock: Callable[[], float] = time.time,
) -> list[CandidateFile]:
    """List every regular file under root that is eligible for upload.

    Args:
        root: Source folder to scan
        marker_file_name: If set, only files under a directory containing this
            marker (at any level up to root) are eligible
        hot_rule: Quarantine for files that may still be written
        clock: Returns the current time in seconds since epoch

    Returns:
        Unordered list of candidates; may be empty

    Raises:
        NotADirectoryError: If root does not exist or is not a directory
    """
    root_str = os.path.abspath(str(root))
    if not os.path.isdir(root_str):
        raise NotADirectoryError(f"Source folder {root_str} does not exist or is not a directory")

    hot_rule = hot_rule if hot_rule is not None else HotFileRule()
    marker = marker_file_name.strip() if marker_file_name else ""
    markers = _MarkerLookup(root_str, marker) if marker else None

    logger.info("Going to scan source folder %s", root_str)
    start = time.monotonic()
    now = clock()

    candidates: list[CandidateFile] = []
    skipped = 0

    for dirpath, _dirnames, filenames in os.walk(root_str):
        for name in filenames:
            path = os.path.join(dirpath, name)
            try:
                st = os.stat(path)
            except OSError:
                logger.debug("Could not stat %s, skipping", path, exc_info=True)
                continue
            if not stat.S_ISREG(st.st_mode):
                continue

            mtime = mtime_millis(st)
            if hot_rule.is_hot(name, mtime, now):
                skipped += 1
                logger.info(
                    "Skipped uploading %s, modified less than %ss ago", path, hot_rule.quarantine_seconds
                )
                continue

            if markers is not None:
                if name == marker:
                    continue
                if not markers.is_ready(dirpath):
                    skipped += 1
                    continue

            candidates.append(CandidateFile(path=path, size=st.st_size, mtime=mtime))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Found %d files in folder %s using marker file %r (skipped %d files), it took %d ms",
        len(candidates),
        root_str,
        marker or None,
        skipped,
        elapsed_ms,
    )
    get_log_service().info(
        "scan",
        "scan_completed",
        f"Found {len(candidates)} files in {root_str}",
        {
            "source_folder": root_str,
            "found": len(candidates),
            "skipped": skipped,
            "marker_file": marker or None,
            "elapsed_ms": elapsed_ms,
        },
    )
    return candidates

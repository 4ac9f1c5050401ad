"""Persisted upload log: one CSV line per completed upload.

Columns (no header): path, hash, size, uploaded, last_modification.
Timestamps are milliseconds since the epoch. The log is append-only and is
read back at startup to seed the dedup ledger.
"""

import csv
import io
import logging
import threading
from collections.abc import Iterator
from dataclasses import astuple, dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

COLUMNS = ("path", "hash", "size", "uploaded", "last_modification")


@dataclass(frozen=True)
class LedgerEntry:
    """A completed upload of one local file."""

    path: str
    hash: str  # hex-encoded MD5 of the uploaded content
    size: int
    uploaded: int  # upload timestamp, ms since epoch
    last_modification: int  # file mtime at upload, ms since epoch


def format_entry(entry: LedgerEntry) -> str:
    """Encode an entry as a single CSV line, including the trailing newline."""
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerow(astuple(entry))
    return buf.getvalue()


def parse_entry(line: str) -> LedgerEntry:
    """Decode one CSV line.

    Raises:
        ValueError: If the line does not have exactly five fields or a numeric
            field is not an integer
    """
    rows = list(csv.reader([line]))
    if len(rows) != 1 or len(rows[0]) != len(COLUMNS):
        raise ValueError(f"expected {len(COLUMNS)} fields")
    path, content_hash, size, uploaded, last_modification = rows[0]
    if not path:
        raise ValueError("empty path")
    return LedgerEntry(
        path=path,
        hash=content_hash,
        size=int(size),
        uploaded=int(uploaded),
        last_modification=int(last_modification),
    )


def read_upload_log(path: str | Path) -> Iterator[LedgerEntry]:
    """Yield entries from an upload log, skipping malformed lines with a warning.

    Lines are decoded one at a time, so a line that is not valid UTF-8 is
    skipped like any other malformed line.

    Args:
        path: Upload log file path

    Raises:
        OSError: If the file cannot be opened
    """
    with open(path, "rb") as f:
        for line_number, raw in enumerate(f, start=1):
            try:
                line = raw.decode("utf-8").rstrip("\r\n")
                if not line.strip():
                    continue
                entry = parse_entry(line)
            except (ValueError, csv.Error) as e:
                logger.warning(
                    "Failed to parse upload log item at %s:%d (%s): %r",
                    path,
                    line_number,
                    e,
                    raw,
                )
                continue
            yield entry


class UploadLogWriter:
    """Appends entries to the upload log, one whole line at a time."""

    def __init__(self, path: Path, stream: TextIO) -> None:
        self.path = path
        self._stream = stream
        self._write_lock = threading.Lock()
        self.lines_written = 0

    def append(self, entry: LedgerEntry) -> None:
        """Write and flush one line. Concurrent callers are serialized."""
        line = format_entry(entry)
        with self._write_lock:
            self._stream.write(line)
            self._stream.flush()
            self.lines_written += 1

    def close(self) -> None:
        with self._write_lock:
            if not self._stream.closed:
                self._stream.close()

    def __enter__(self) -> "UploadLogWriter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def open_upload_log_writer(path: str | Path | None) -> UploadLogWriter | None:
    """Open the upload log for appending.

    Returns None when no path is configured or the file cannot be opened; the
    failure is logged and uploads proceed without durable logging.
    """
    if not path or not str(path).strip():
        return None

    log_path = Path(path)
    if log_path.exists():
        logger.info("Upload log file %s already exists, appending it", log_path)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stream = open(log_path, "a", encoding="utf-8", newline="")
    except OSError:
        logger.warning("Failed to create writer for upload log file %s", log_path, exc_info=True)
        return None
    return UploadLogWriter(log_path, stream)

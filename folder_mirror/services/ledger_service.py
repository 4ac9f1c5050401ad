"""In-memory dedup ledger of previously uploaded files."""

import logging
import threading
import time
from datetime import UTC, datetime
from pathlib import Path

from folder_mirror.services.log_service import get_log_service
from folder_mirror.services.upload_log_service import (
    LedgerEntry,
    UploadLogWriter,
    read_upload_log,
)

logger = logging.getLogger(__name__)


def _format_millis(millis: int) -> str:
    """ISO timestamp for ms since epoch, or the raw number when out of range."""
    try:
        return datetime.fromtimestamp(millis / 1000, tz=UTC).isoformat()
    except (OverflowError, ValueError, OSError):
        return str(millis)


class DedupLedger:
    """Thread-safe mapping of local path to its last successful upload.

    A path being present only says that a file at that path was uploaded at
    some point; size, mtime or content hash must still match the file on disk.
    """

    def __init__(self) -> None:
        self._entries: dict[str, LedgerEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def contains(self, path: str) -> bool:
        """Check whether any upload has been recorded for a path."""
        with self._lock:
            return path in self._entries

    def get(self, path: str) -> LedgerEntry | None:
        with self._lock:
            return self._entries.get(path)

    def was_uploaded(
        self,
        path: str,
        size: int,
        mtime: int,
        content_hash: str | None = None,
    ) -> bool:
        """Decide whether a file has already been uploaded.

        With a content hash the comparison is hash + size (mtime ignored).
        Without one it is the cheap metadata check: mtime + size.

        Args:
            path: Absolute local path
            size: Current file size in bytes
            mtime: Current modification time, ms since epoch
            content_hash: Hex digest of the current content, if computed

        Returns:
            True if the ledger entry for this path matches
        """
        entry = self.get(path)
        if entry is None:
            return False

        if content_hash:
            matched = entry.hash == content_hash and entry.size == size
        else:
            matched = entry.last_modification == mtime and entry.size == size

        if matched and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "File %s has been already uploaded on %s", path, _format_millis(entry.uploaded)
            )
        return matched

    def record(
        self,
        path: str,
        size: int,
        content_hash: str,
        uploaded_at: int,
        mtime: int,
        writer: UploadLogWriter | None = None,
    ) -> LedgerEntry:
        """Upsert the entry for a path and append it to the upload log.

        A failed append is logged; the in-memory entry is kept either way.
        """
        entry = LedgerEntry(
            path=path,
            hash=content_hash,
            size=size,
            uploaded=uploaded_at,
            last_modification=mtime,
        )
        with self._lock:
            self._entries[path] = entry

        if writer is not None:
            try:
                writer.append(entry)
            except (OSError, ValueError):
                logger.warning("Failed to save upload log item for file %s", path, exc_info=True)
        return entry

    def load_upload_log(self, path: str | Path | None) -> int:
        """Seed the ledger from a persisted upload log.

        Later lines for the same path replace earlier ones. A blank path or a
        missing file is a no-op; a read failure is logged, never raised.

        Returns:
            Number of entries loaded from the file
        """
        if not path or not str(path).strip():
            return 0

        log_path = Path(path)
        if not log_path.exists():
            logger.info("Upload log %s does not exist yet, starting with an empty ledger", log_path)
            return 0

        start = time.monotonic()
        loaded = 0
        try:
            for entry in read_upload_log(log_path):
                with self._lock:
                    self._entries[entry.path] = entry
                loaded += 1
        except (OSError, ValueError):
            logger.warning("Failed to read upload log file %s", log_path, exc_info=True)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Read %d upload log items from %s in %d ms (%d distinct paths)",
            loaded,
            log_path,
            elapsed_ms,
            len(self),
        )
        get_log_service().info(
            "ledger",
            "upload_log_loaded",
            f"Loaded {loaded} upload log items from {log_path}",
            {"path": str(log_path), "items": loaded, "paths": len(self), "elapsed_ms": elapsed_ms},
        )
        return loaded


# Global ledger instance
_ledger: DedupLedger | None = None


def get_ledger() -> DedupLedger:
    """Get the global ledger instance."""
    global _ledger
    if _ledger is None:
        _ledger = DedupLedger()
    return _ledger

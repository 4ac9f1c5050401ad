"""Cycle supervisor: scan, upload, sleep, forever."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from folder_mirror.config import Settings
from folder_mirror.services.ledger_service import DedupLedger
from folder_mirror.services.log_service import get_log_service
from folder_mirror.services.s3_service import FatalSetupError
from folder_mirror.services.scanner_service import HotFileRule, scan_ready_files
from folder_mirror.services.upload_manager import CycleStats, UploadManager
from folder_mirror.services.utils import format_duration, format_file_size

logger = logging.getLogger(__name__)


@dataclass
class Totals:
    """Counters accumulated over the process lifetime."""

    cycles: int = 0
    failed_cycles: int = 0
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    uploaded_bytes: int = 0

    def add(self, stats: CycleStats) -> None:
        self.uploaded += stats.uploaded
        self.skipped += stats.skipped
        self.failed += stats.failed
        self.uploaded_bytes += stats.uploaded_bytes


class CycleSupervisor:
    """Repeats the scan and upload cycle and keeps the process alive.

    Scans are throttled to one per scan_interval_seconds. A cycle that raises
    is logged and followed by a failure_backoff_seconds sleep; only a
    FatalSetupError ends the loop.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: DedupLedger,
        manager: UploadManager,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.manager = manager
        self._clock = clock
        self._sleep = sleep
        self.previous_scan_finished: float | None = None
        self.totals = Totals()

    def run(self, max_cycles: int | None = None) -> Totals:
        """Run cycles until max_cycles have been attempted (forever when None).

        Raises:
            FatalSetupError: If the object store cannot be used at all
        """
        attempted = 0
        while max_cycles is None or attempted < max_cycles:
            attempted += 1
            try:
                self._throttle()
                self.run_cycle()
            except FatalSetupError:
                get_log_service().error(
                    "cycle", "cycle_fatal", "Object store setup failed, stopping"
                )
                raise
            except Exception as e:
                self.totals.failed_cycles += 1
                backoff = self.settings.failure_backoff_seconds
                logger.warning(
                    "Something bad happened, retrying in %s...", format_duration(backoff), exc_info=True
                )
                get_log_service().warning(
                    "cycle",
                    "cycle_failed",
                    f"Cycle failed, retrying in {format_duration(backoff)}: {e}",
                    {"error": str(e), "backoff_seconds": backoff},
                )
                self._sleep(backoff)
        return self.totals

    def _throttle(self) -> None:
        """Sleep until scan_interval_seconds have passed since the previous scan."""
        if self.previous_scan_finished is None:
            return
        since = self._clock() - self.previous_scan_finished
        interval = self.settings.scan_interval_seconds
        if since < interval:
            remaining = interval - since
            logger.info("Sleeping %s before next scan...", format_duration(remaining))
            self._sleep(remaining)

    def run_cycle(self) -> CycleStats:
        """Scan the source folder and upload what is found."""
        self.totals.cycles += 1
        candidates = scan_ready_files(
            self.settings.source_folder,
            self.settings.folder_ready_marker_file or None,
            HotFileRule(
                extensions=self.settings.hot_file_extensions,
                quarantine_seconds=self.settings.hot_file_quarantine_seconds,
            ),
            clock=self._clock,
        )
        self.previous_scan_finished = self._clock()

        if not candidates:
            logger.info(
                "Specified source folder %s doesn't contain any files ready for upload",
                self.settings.source_folder,
            )
            stats = CycleStats(started_at=self.previous_scan_finished, finished_at=self._clock())
        else:
            logger.debug(
                "Found %d files in source folder %s", len(candidates), self.settings.source_folder
            )
            stats = self.manager.run_cycle(candidates)

        self.totals.add(stats)

        logger.info(
            "Finished uploading %d files (+ %d skipped, %d failed) of total size %s in %s; "
            "since start %d files (+ %d skipped) of total size %s",
            stats.uploaded,
            stats.skipped,
            stats.failed,
            format_file_size(stats.uploaded_bytes),
            format_duration(stats.elapsed_seconds),
            self.totals.uploaded,
            self.totals.skipped,
            format_file_size(self.totals.uploaded_bytes),
        )
        get_log_service().info(
            "cycle",
            "cycle_completed",
            f"Cycle completed: {stats.uploaded} uploaded, {stats.skipped} skipped, "
            f"{stats.failed} failed",
            {
                **stats.to_dict(),
                "ledger_size": len(self.ledger),
                "total_uploaded": self.totals.uploaded,
                "total_skipped": self.totals.skipped,
                "total_uploaded_bytes": self.totals.uploaded_bytes,
            },
        )
        return stats

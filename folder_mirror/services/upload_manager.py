"""Upload manager: drains the work queues with a pool of upload workers."""

import hashlib
import io
import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any

from mypy_boto3_s3 import S3Client

from folder_mirror.config import Settings
from folder_mirror.services import s3_service
from folder_mirror.services.ledger_service import DedupLedger
from folder_mirror.services.log_service import get_log_service
from folder_mirror.services.scanner_service import CandidateFile, mtime_millis
from folder_mirror.services.upload_log_service import UploadLogWriter, open_upload_log_writer
from folder_mirror.services.utils import format_file_size

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 8 * 1024 * 1024  # 8 MB


class FileOutcome(Enum):
    """Result of processing one queue item."""

    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class CycleStats:
    """Counters for one upload phase, safe to update from several workers."""

    files_total: int = 0
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    uploaded_bytes: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, outcome: FileOutcome, size: int = 0) -> int:
        """Count one terminal outcome.

        Returns:
            The updated counter for that outcome
        """
        with self.lock:
            if outcome is FileOutcome.UPLOADED:
                self.uploaded += 1
                self.uploaded_bytes += size
                return self.uploaded
            if outcome is FileOutcome.SKIPPED:
                self.skipped += 1
                return self.skipped
            if outcome is FileOutcome.FAILED:
                self.failed += 1
                return self.failed
        raise ValueError(f"{outcome} is not a terminal outcome")

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        with self.lock:
            return {
                "files_total": self.files_total,
                "uploaded": self.uploaded,
                "skipped": self.skipped,
                "failed": self.failed,
                "uploaded_bytes": self.uploaded_bytes,
                "uploaded_bytes_formatted": format_file_size(self.uploaded_bytes),
                "elapsed_seconds": round(self.elapsed_seconds, 3),
            }


class WorkQueues:
    """Primary queue of fresh candidates plus a deferred queue.

    Candidates whose path is already in the ledger are moved to the deferred
    queue so that files that probably changed get hashed and uploaded first.
    Pops never block: an empty pair means the worker is done.
    """

    def __init__(self, candidates: Iterable[CandidateFile] = ()) -> None:
        self._primary: queue.SimpleQueue[CandidateFile] = queue.SimpleQueue()
        self._deferred: queue.SimpleQueue[CandidateFile] = queue.SimpleQueue()
        for candidate in candidates:
            self._primary.put(candidate)

    def next(self) -> tuple[CandidateFile, bool] | None:
        """Claim the next candidate.

        Returns:
            (candidate, was_deferred), or None when both queues are empty
        """
        try:
            return self._primary.get_nowait(), False
        except queue.Empty:
            pass
        try:
            return self._deferred.get_nowait(), True
        except queue.Empty:
            return None

    def defer(self, candidate: CandidateFile) -> None:
        self._deferred.put(candidate)

    @property
    def primary_size(self) -> int:
        return self._primary.qsize()

    @property
    def deferred_size(self) -> int:
        return self._deferred.qsize()


def compute_md5(stream: IO[bytes], chunk_size: int = _CHUNK_SIZE) -> tuple[str, int]:
    """Compute the MD5 hex digest of a stream.

    Returns:
        (hex digest, number of bytes read)
    """
    h = hashlib.md5(usedforsecurity=False)
    total = 0
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
        total += len(chunk)
    return h.hexdigest(), total


class FileContent:
    """Content of a local file, either held in memory or re-read from disk."""

    def __init__(self, path: str, in_memory: bool = False) -> None:
        self.path = path
        self.in_memory = in_memory
        self._data: bytes | None = None
        self.length = 0

    def open(self) -> IO[bytes]:
        if self.in_memory:
            if self._data is None:
                with open(self.path, "rb") as f:
                    self._data = f.read()
            return io.BytesIO(self._data)
        return open(self.path, "rb")

    def md5_hex(self) -> str:
        """Hash the content and remember how many bytes it had."""
        with self.open() as stream:
            digest, self.length = compute_md5(stream)
        return digest


@dataclass
class _CycleRun:
    """Everything the workers of one cycle share."""

    client: S3Client
    queues: WorkQueues
    stats: CycleStats
    writer: UploadLogWriter | None


class UploadManager:
    """Runs one upload phase per cycle with a fresh pool of workers."""

    def __init__(
        self,
        settings: Settings,
        ledger: DedupLedger,
        client_factory: Callable[[], S3Client] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self._client_factory = client_factory
        self._clock = clock

    def _create_client(self) -> S3Client:
        """Create the S3 client and make sure the target bucket exists.

        Raises:
            FatalSetupError: On authentication or addressing problems
        """
        try:
            if self._client_factory is not None:
                client = self._client_factory()
            else:
                client = s3_service.create_s3_client(
                    self.settings.aws_profile,
                    self.settings.aws_region,
                    self.settings.endpoint_url or None,
                )
            s3_service.ensure_bucket(client, self.settings.target_bucket, self.settings.aws_region)
        except Exception as e:
            fatal = s3_service.classify_setup_error(e)
            if fatal is not None:
                raise fatal from e
            raise
        return client

    def run_cycle(self, candidates: list[CandidateFile]) -> CycleStats:
        """Upload the candidates of one cycle and wait for every worker.

        Args:
            candidates: Files found by the scanner

        Returns:
            Counters for this cycle

        Raises:
            FatalSetupError: If the object store rejects the credentials or address
            Exception: Any other client setup failure (the cycle is abandoned)
        """
        stats = CycleStats(files_total=len(candidates), started_at=self._clock())
        if not candidates:
            stats.finished_at = self._clock()
            return stats

        threads = self.settings.upload_threads
        writer = open_upload_log_writer(self.settings.upload_log)
        try:
            client = self._create_client()
            run = _CycleRun(client=client, queues=WorkQueues(candidates), stats=stats, writer=writer)

            logger.info(
                "Starting uploading folder %s to %s using %d threads ...",
                self.settings.source_folder,
                s3_service.object_uri(self.settings.target_bucket, self.settings.target_folder),
                threads,
            )

            with ThreadPoolExecutor(
                max_workers=threads, thread_name_prefix="upload-worker"
            ) as executor:
                futures = [executor.submit(self._worker, run) for _ in range(threads)]
                for future in as_completed(futures):
                    try:
                        future.result()
                    except Exception:
                        logger.exception("Upload worker stopped unexpectedly")
        finally:
            if writer is not None:
                writer.close()

        stats.finished_at = self._clock()
        return stats

    def _worker(self, run: _CycleRun) -> tuple[int, int]:
        """Drain the queues until both are empty.

        Returns:
            (files uploaded, bytes uploaded) by this worker
        """
        uploaded_count = 0
        uploaded_bytes = 0
        while True:
            item = run.queues.next()
            if item is None:
                break
            candidate, deferred = item
            try:
                outcome, size = self.process_file(candidate, deferred, run)
            except Exception as e:
                failed = run.stats.add(FileOutcome.FAILED)
                logger.warning(
                    "Failed to upload file %s (%d failed)", candidate.path, failed, exc_info=True
                )
                get_log_service().error(
                    "upload",
                    "file_upload_failed",
                    f"Failed to upload {candidate.path}: {e}",
                    {"path": candidate.path, "error": str(e)},
                )
                continue

            if outcome is FileOutcome.UPLOADED:
                uploaded_count += 1
                uploaded_bytes += size

        logger.info(
            "Thread %s uploaded %d files of total size %s",
            threading.current_thread().name,
            uploaded_count,
            format_file_size(uploaded_bytes),
        )
        return uploaded_count, uploaded_bytes

    def process_file(
        self,
        candidate: CandidateFile,
        deferred: bool,
        run: _CycleRun,
    ) -> tuple[FileOutcome, int]:
        """Take one candidate through dedup, upload and verification.

        Args:
            candidate: The claimed candidate
            deferred: Whether it came from the deferred queue
            run: Shared state of the current cycle

        Returns:
            (outcome, size in bytes)

        Raises:
            OSError: If the file cannot be read
            IntegrityError: If the stored digest does not match
            ClientError: If the upload call fails
        """
        path = candidate.path

        if not deferred and self.ledger.contains(path):
            run.queues.defer(candidate)
            return FileOutcome.DEFERRED, 0

        st = os.stat(path)
        size = st.st_size
        mtime = mtime_millis(st)

        if self.ledger.was_uploaded(path, size, mtime):
            skipped = run.stats.add(FileOutcome.SKIPPED)
            logger.info("Skipping file %s, it has been already uploaded (%d skipped)", path, skipped)
            return FileOutcome.SKIPPED, size

        content = FileContent(path, self.settings.in_memory)
        digest = content.md5_hex()
        if content.length != size:
            raise OSError(f"File {path} changed while reading ({size} -> {content.length} bytes)")

        if self.ledger.was_uploaded(path, size, mtime, digest):
            skipped = run.stats.add(FileOutcome.SKIPPED)
            logger.info(
                "Skipping file %s, it has been already uploaded (%d skipped), checked by md5",
                path,
                skipped,
            )
            return FileOutcome.SKIPPED, size

        bucket = self.settings.target_bucket
        key = s3_service.build_object_key(
            self.settings.source_folder, path, self.settings.target_folder
        )
        uri = s3_service.object_uri(bucket, key)

        upload_start = time.monotonic()
        with content.open() as body:
            stored_digest = s3_service.upload_object(
                run.client, bucket, key, body, size, content_md5=digest
            )

        if stored_digest != digest:
            try:
                s3_service.delete_object_if_exists(run.client, bucket, key)
            except Exception:
                logger.info("Failed to delete broken object %s", uri, exc_info=True)
            get_log_service().error(
                "upload",
                "integrity_mismatch",
                f"Uploaded object {uri} has wrong hash",
                {"path": path, "key": key, "expected": digest, "actual": stored_digest},
            )
            raise s3_service.IntegrityError(
                f"Uploaded file {uri} has wrong hash {stored_digest} but expected {digest}"
            )

        duration_ms = int((time.monotonic() - upload_start) * 1000)
        uploaded = run.stats.add(FileOutcome.UPLOADED, size)
        self.ledger.record(path, size, digest, int(self._clock() * 1000), mtime, run.writer)

        logger.info(
            "Uploaded file %s to %s in %d ms, totally uploaded %d files of %d (%d skipped)",
            path,
            uri,
            duration_ms,
            uploaded,
            run.stats.files_total,
            run.stats.skipped,
        )
        get_log_service().info(
            "upload",
            "file_uploaded",
            f"Uploaded {path}",
            {
                "path": path,
                "key": key,
                "bucket": bucket,
                "file_size": size,
                "md5": digest,
                "duration_ms": duration_ms,
            },
        )
        return FileOutcome.UPLOADED, size

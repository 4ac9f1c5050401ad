"""Supervisor factory for folder-mirror."""

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from mypy_boto3_s3 import S3Client

from folder_mirror.config import Settings, get_package_version, get_settings

if TYPE_CHECKING:
    from folder_mirror.services.supervisor import CycleSupervisor


def create_supervisor(
    settings: Settings | None = None,
    client_factory: Callable[[], S3Client] | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> "CycleSupervisor":
    """Validate settings, seed the ledger and wire the sync services together.

    Raises:
        ConfigError: If required settings are missing or invalid
    """
    from folder_mirror.services.ledger_service import get_ledger
    from folder_mirror.services.log_service import get_log_service
    from folder_mirror.services.supervisor import CycleSupervisor
    from folder_mirror.services.upload_manager import UploadManager

    settings = settings if settings is not None else get_settings()
    settings.validate()

    ledger = get_ledger()
    ledger.load_upload_log(settings.skip_uploaded_log)

    manager = UploadManager(settings, ledger, client_factory=client_factory, clock=clock)
    supervisor = CycleSupervisor(settings, ledger, manager, clock=clock, sleep=sleep)

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"folder-mirror started (v{get_package_version()})",
        {
            "version": get_package_version(),
            "source_folder": settings.source_folder,
            "target_bucket": settings.target_bucket,
            "target_folder": settings.target_folder,
            "upload_threads": settings.upload_threads,
            "ledger_size": len(ledger),
        },
    )

    return supervisor


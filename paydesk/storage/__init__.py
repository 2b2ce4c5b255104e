# paydesk/storage/__init__.py
# ============================================================================
# PAYDESK — STORAGE MODULE
# ============================================================================
# Archival sinks for rendered invoices (Drive, GitHub, S3)
# ============================================================================

import logging
from typing import Optional

from paydesk.config import Settings
from paydesk.storage.base import ArchiveReceipt, IArchiveSink
from paydesk.storage.drive_storage import GoogleDriveArchive
from paydesk.storage.github_storage import GitHubArchive
from paydesk.storage.s3_storage import S3Archive

logger = logging.getLogger("Paydesk.Storage")


def build_archive_sink(settings: Settings) -> Optional[IArchiveSink]:
    """Archival sink for the configured backend, or None when unconfigured."""
    backend = settings.resolve_archive_backend()

    if backend == "drive":
        return GoogleDriveArchive(
            folder_id=settings.google_drive_folder_id,
            credentials_json=settings.google_credentials_json,
            credentials_file=settings.google_credentials_file,
        )
    if backend == "github":
        return GitHubArchive(
            token=settings.github_token,
            owner=settings.github_owner,
            repo=settings.github_repo,
            branch=settings.github_branch,
            directory=settings.github_invoice_dir,
            timeout_seconds=settings.sink_timeout_seconds,
        )
    if backend == "s3":
        return S3Archive(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.aws_region,
        )

    if settings.archive_backend and settings.archive_backend.lower() != "none":
        logger.warning(f"Archive backend '{settings.archive_backend}' is not fully configured - archiving disabled")
    else:
        logger.info("No archival sink configured - invoices will not be archived")
    return None


__all__ = [
    "ArchiveReceipt",
    "IArchiveSink",
    "GoogleDriveArchive",
    "GitHubArchive",
    "S3Archive",
    "build_archive_sink",
]

# paydesk/storage/drive_storage.py
# ============================================================================
# PAYDESK — GOOGLE DRIVE ARCHIVE
# ============================================================================
# Uploads invoice PDFs into a shared Drive folder with a service account.
# The Google client is blocking, so every call runs in the default executor.
# ============================================================================

import asyncio
import json
import logging
import os
from typing import Any, Optional

from paydesk.errors import SinkError, TransientSinkError
from paydesk.storage.base import PDF_MIME, ArchiveReceipt, IArchiveSink

logger = logging.getLogger("Paydesk.DriveStorage")

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]


class GoogleDriveArchive(IArchiveSink):
    """
    Google Drive archival sink.

    Credentials come either inline (GOOGLE_APPLICATION_CREDENTIALS_JSON) or
    from a key file path. The service is built lazily on first upload.
    """

    name = "drive"

    def __init__(
        self,
        folder_id: str,
        credentials_json: Optional[str] = None,
        credentials_file: Optional[str] = None,
        service: Any = None,
    ):
        self.folder_id = folder_id
        self.credentials_json = credentials_json
        self.credentials_file = credentials_file
        self._service = service

    def _build_service(self):
        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        if self.credentials_json:
            info = json.loads(self.credentials_json)
            credentials = service_account.Credentials.from_service_account_info(
                info, scopes=DRIVE_SCOPES
            )
        elif self.credentials_file and os.path.exists(self.credentials_file):
            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_file, scopes=DRIVE_SCOPES
            )
        else:
            raise SinkError("Google Drive credentials not found")

        return build("drive", "v3", credentials=credentials, cache_discovery=False)

    async def _get_service(self):
        if self._service is None:
            loop = asyncio.get_running_loop()
            self._service = await loop.run_in_executor(None, self._build_service)
            logger.info(f"Google Drive archive initialized for folder {self.folder_id}")
        return self._service

    async def archive(self, filename: str, content: bytes) -> ArchiveReceipt:
        from googleapiclient.errors import HttpError
        from googleapiclient.http import MediaInMemoryUpload

        service = await self._get_service()

        file_metadata = {
            "name": filename,
            "parents": [self.folder_id],
            "mimeType": PDF_MIME,
        }
        media = MediaInMemoryUpload(content, mimetype=PDF_MIME)

        def upload():
            return service.files().create(
                body=file_metadata,
                media_body=media,
                fields="id, name, webViewLink",
            ).execute()

        try:
            result = await asyncio.get_running_loop().run_in_executor(None, upload)
        except HttpError as e:
            status = getattr(e.resp, "status", 0)
            if status == 429 or status >= 500:
                raise TransientSinkError(
                    f"Drive upload failed ({status}): {e}", may_have_applied=status != 429
                ) from e
            raise SinkError(f"Drive upload rejected ({status}): {e}") from e

        logger.info(f"Uploaded {filename} to Google Drive -> {result.get('id')}")
        return ArchiveReceipt(
            reference=result["id"],
            url=result.get("webViewLink"),
            name=result.get("name", filename),
        )

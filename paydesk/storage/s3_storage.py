# paydesk/storage/s3_storage.py
# ============================================================================
# PAYDESK — S3 ARCHIVE
# ============================================================================

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from paydesk.errors import SinkError, TransientSinkError
from paydesk.storage.base import PDF_MIME, ArchiveReceipt, IArchiveSink

logger = logging.getLogger("Paydesk.S3Storage")


class S3Archive(IArchiveSink):
    """Object-storage sink; the reference is the object key."""

    name = "s3"
    # Same key on every attempt, last write wins
    idempotent = True

    def __init__(
        self,
        bucket: str,
        prefix: str = "invoices/",
        region: str = "ap-south-1",
        client: Optional[Any] = None,
    ):
        self.bucket = bucket
        self.prefix = prefix
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            config=Config(signature_version="s3v4", retries={"max_attempts": 1}),
        )

    async def archive(self, filename: str, content: bytes) -> ArchiveReceipt:
        key = f"{self.prefix}{filename}"

        def put():
            return self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=PDF_MIME,
            )

        try:
            await asyncio.get_running_loop().run_in_executor(None, put)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if status >= 500 or status == 429:
                raise TransientSinkError(f"S3 upload failed ({status}): {e}") from e
            raise SinkError(f"S3 upload rejected ({status}): {e}") from e
        except BotoCoreError as e:
            raise TransientSinkError(f"S3 upload failed: {e}") from e

        logger.info(f"Uploaded {filename} to s3://{self.bucket}/{key}")
        return ArchiveReceipt(
            reference=key,
            url=f"s3://{self.bucket}/{key}",
            name=filename,
        )

"""
S3 Document Storage

The upload service writes raw files to:
    s3://<BUCKET>/<storage_key>
and records storage_key on the Document row. Workers only read: the key is
always taken from the database, never from a task payload or a client.

Task payloads carry job ids only — raw file bytes are never sent through the
broker.
"""

from __future__ import annotations

import logging
from typing import Protocol

import aioboto3
from botocore.exceptions import ClientError

from docpipeline.core.config import settings
from docpipeline.core.exceptions import FileTooLarge

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """Read side of document storage used by the worker."""

    async def get_bytes(self, key: str) -> bytes: ...


class S3DocumentStorage:
    """
    Async S3 reads for the document bucket.

    Raises FileNotFoundError for a missing object and FileTooLarge when the
    stored object exceeds the processing limit (checked before download).
    Other ClientErrors propagate.
    """

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        max_size_bytes: int | None = None,
    ) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._region = region or settings.aws_region
        self._max_size = max_size_bytes or settings.max_file_size_bytes
        self._session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
        )

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    async def get_bytes(self, key: str) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

            size = resp.get("ContentLength") or 0
            if size > self._max_size:
                resp["Body"].close()
                raise FileTooLarge(f"{size} bytes exceeds limit of {self._max_size}", key=key)

            data = await resp["Body"].read()

        logger.info("S3 download | bucket=%s key=%s size=%d", self._bucket, key, len(data))
        return data

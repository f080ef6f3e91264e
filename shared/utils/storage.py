"""
shared/utils/storage.py
S3-compatible object storage for images and seller proof documents.

Every upload gets a fresh, never-reused path:
    [folder/]<epoch-ms>-<13 random chars>.<ext>
Stored objects are never overwritten or deleted.
"""

import asyncio
import logging
import secrets
import string
import time
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import HTTPException, UploadFile

from config.settings import settings

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class StorageError(Exception):
    """Upload did not complete; callers must not write rows referencing it."""


def build_object_path(filename: Optional[str], folder: Optional[str] = None) -> str:
    """Generate a unique object path, optionally prefixed with a folder."""
    ext = "dat"
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower() or "dat"
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(13))
    name = f"{int(time.time() * 1000)}-{suffix}.{ext}"
    return f"{folder.strip('/')}/{name}" if folder else name


class ObjectStorage:
    """Thin async wrapper over a boto3 S3 client."""

    def __init__(self, client=None, public_base_url: str = settings.S3_PUBLIC_BASE_URL):
        self._client = client
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.S3_ENDPOINT_URL,
                aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
                aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
                region_name=settings.S3_REGION,
            )
        return self._client

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/{bucket}/{path}"

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        """Upload bytes. Raises StorageError on any failure."""
        extra = {"CacheControl": settings.S3_CACHE_CONTROL}
        if content_type:
            extra["ContentType"] = content_type
        try:
            # boto3 is blocking; keep the event loop free
            await asyncio.to_thread(
                self.client.put_object, Bucket=bucket, Key=path, Body=data, **extra
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"Upload to {bucket}/{path} failed: {exc}")
            raise StorageError(str(exc)) from exc

    async def upload_file(
        self,
        file: UploadFile,
        bucket: str,
        folder: Optional[str] = None,
    ) -> str:
        """
        Upload a request file under a generated path and return its public URL.
        Empty (422) and oversized (413) files are refused before any upload.
        """
        data = await file.read()
        if not data:
            raise HTTPException(status_code=422, detail="Uploaded file is empty")
        if len(data) > settings.MAX_UPLOAD_BYTES:
            raise HTTPException(
                status_code=413,
                detail=f"Uploaded file is too large (limit {settings.MAX_UPLOAD_BYTES} bytes)",
            )

        path = build_object_path(file.filename, folder)
        await self.upload(bucket, path, data, content_type=file.content_type)
        url = self.get_public_url(bucket, path)
        logger.info(f"Image uploaded successfully: {url}")
        return url


_storage: Optional[ObjectStorage] = None


def get_storage() -> ObjectStorage:
    """FastAPI dependency returning the process-wide storage client."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage

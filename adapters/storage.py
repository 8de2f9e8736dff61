# adapters/storage.py
"""
Blob stores for screenshots, evidence images and recordings.

Both stores expose the same two calls:
    put(path, data, content_type) -> public url
    list(prefix) -> [public url, ...]
"""
from typing import List, Optional
import os
import logging
import pathlib

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class LocalBlobStore:
    """Filesystem store, used in development and tests."""

    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None):
        self.root = pathlib.Path(root or os.getenv("STORAGE_LOCAL_DIR", "./blob_storage"))
        base = public_base_url if public_base_url is not None else os.getenv("STORAGE_PUBLIC_BASE_URL")
        self.public_base_url = base.rstrip("/") if base else None

    def _url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{path}"
        return (self.root / path).resolve().as_uri()

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self.root / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"could not write {path}: {e}")
        logger.debug("Stored %s (%s, %d bytes)", path, content_type, len(data))
        return self._url(path)

    def list(self, prefix: str) -> List[str]:
        base = self.root / prefix
        if not base.exists():
            return []
        if base.is_file():
            return [self._url(prefix)]
        return sorted(self._url(p.relative_to(self.root).as_posix()) for p in base.rglob("*") if p.is_file())


class R2BlobStore:
    """Cloudflare R2 through its S3-compatible API."""

    def __init__(self, bucket: Optional[str] = None, endpoint_url: Optional[str] = None,
                 public_base_url: Optional[str] = None, client=None):
        self.bucket = bucket or os.getenv("R2_BUCKET")
        self.endpoint_url = endpoint_url or os.getenv("R2_ENDPOINT_URL")
        self.public_base_url = (public_base_url or os.getenv("STORAGE_PUBLIC_BASE_URL") or "").rstrip("/")
        self._client = client

    def _validate(self) -> bool:
        return bool(self.bucket and self.endpoint_url)

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                aws_access_key_id=os.getenv("R2_ACCESS_KEY_ID"),
                aws_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY"),
                region_name="auto",
            )
        return self._client

    def _url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        if not self._validate():
            raise StorageError("R2 storage not configured. Set R2_BUCKET and R2_ENDPOINT_URL.")
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.exception("R2 upload failed for %s", path)
            raise StorageError(str(e))
        return self._url(path)

    def list(self, prefix: str) -> List[str]:
        if not self._validate():
            raise StorageError("R2 storage not configured. Set R2_BUCKET and R2_ENDPOINT_URL.")
        urls: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []) or []:
                    urls.append(self._url(obj["Key"]))
        except (BotoCoreError, ClientError) as e:
            logger.exception("R2 list failed for %s", prefix)
            raise StorageError(str(e))
        return urls

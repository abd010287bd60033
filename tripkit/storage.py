"""
Blob storage abstraction for S3-compatible buckets and in-memory testing.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_EXISTS_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class BlobStore(Protocol):
    """Defines the operations the media library needs from object storage."""

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        ...

    def move(self, old_key: str, new_key: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def public_url(self, key: str) -> str:
        ...

    def get_bytes(self, key: str) -> bytes:
        ...


@dataclass
class InMemoryBlobStore:
    """Test double for blob storage; refuses to overwrite existing keys."""

    base_url: str = "https://example.test/storage/media"
    stored_objects: dict = field(default_factory=dict)

    def __post_init__(self):
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        with self._lock:
            if key in self.stored_objects:
                raise FileExistsError(key)
            self.stored_objects[key] = bytes(data)

    def move(self, old_key: str, new_key: str) -> None:
        with self._lock:
            if old_key not in self.stored_objects:
                raise FileNotFoundError(old_key)
            if new_key in self.stored_objects:
                raise FileExistsError(new_key)
            self.stored_objects[new_key] = self.stored_objects.pop(old_key)

    def delete(self, key: str) -> None:
        with self._lock:
            # Removing a missing object is not an error, matching S3.
            self.stored_objects.pop(key, None)

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"

    def get_bytes(self, key: str) -> bytes:
        stored = self.stored_objects.get(key)
        if stored is None:
            raise FileNotFoundError(key)
        return stored


@dataclass
class S3BlobStore:
    """
    S3-compatible blob store (AWS S3, Tencent COS, MinIO).

    ``public_url`` is deterministic and assumes the bucket is public-readable.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Use virtual-hosted style addressing to satisfy COS requirements.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        # Conditional write: an existing object is never replaced.
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or "application/octet-stream",
                CacheControl="max-age=3600",
                IfNoneMatch="*",
            )
        except ClientError as exc:
            if _error_code(exc) in _EXISTS_CODES:
                raise FileExistsError(key) from exc
            raise

    def _exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise
        return True

    def move(self, old_key: str, new_key: str) -> None:
        if self._exists(new_key):
            raise FileExistsError(new_key)
        # S3 has no rename: copy then remove the source.
        self._client.copy_object(
            Bucket=self.bucket,
            Key=new_key,
            CopySource={"Bucket": self.bucket, "Key": old_key},
        )
        self._client.delete_object(Bucket=self.bucket, Key=old_key)

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(key)}"
        if not self.endpoint:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"
        host = self.endpoint.split("://", 1)[-1].rstrip("/")
        return f"https://{self.bucket}.{host}/{quote(key)}"

    def get_bytes(self, key: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=key)
        return response["Body"].read()

"""
Object storage for uploaded files (S3-compatible, or in-memory for tests).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

import boto3
from botocore.config import Config


class ObjectStore(Protocol):
    """Stores a blob and returns the URL it can be fetched from."""

    def put_object(self, path: str, data: bytes, content_type: str) -> str:
        ...


@dataclass
class InMemoryObjectStore:
    """Test double for object storage."""

    base_url: str = "https://example.test/storage"
    stored_objects: dict = field(default_factory=dict)

    def put_object(self, path: str, data: bytes, content_type: str) -> str:
        self.stored_objects[path] = (bytes(data), content_type)
        return f"{self.base_url}/{path}"

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored[0]


@dataclass
class S3ObjectStore:
    """
    S3-compatible object store (Tencent COS, MinIO, AWS S3).

    Returned URLs are built from ``public_base_url`` when set, otherwise
    from the endpoint and bucket using virtual-hosted addressing.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def object_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        scheme, _, host = (self.endpoint or "").partition("://")
        if not host:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{path}"
        return f"{scheme}://{self.bucket}.{host.rstrip('/')}/{path}"

    def put_object(self, path: str, data: bytes, content_type: str) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )
        return self.object_url(path)

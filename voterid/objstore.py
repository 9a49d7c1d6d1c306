"""
Object storage for rendered voting credentials.

A credential is rendered as a QR code PNG of its canonical signed JSON.
The store only needs put/get/delete.
"""

import os
from pathlib import Path, PurePosixPath

from . import config


class ObjectStore:
    def put(self, path: str, data: bytes, content_type: str = "application/json") -> str:
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError


def _safe_key(path: str) -> str:
    p = PurePosixPath(path)
    if p.is_absolute() or ".." in p.parts or not p.parts:
        raise ValueError(f"invalid object path: {path!r}")
    return str(p)


class FilesystemObjectStore(ObjectStore):
    """Objects as files under a root directory; URLs are file:// URIs."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _full(self, path: str) -> Path:
        return self.root / _safe_key(path)

    def put(self, path: str, data: bytes, content_type: str = "application/json") -> str:
        full = self._full(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        tmp = full.with_suffix(full.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, full)
        return full.as_uri()

    def get(self, path: str) -> bytes:
        return self._full(path).read_bytes()

    def delete(self, path: str) -> None:
        try:
            self._full(path).unlink()
        except FileNotFoundError:
            pass


class S3ObjectStore(ObjectStore):
    """Objects in an S3 bucket under a key prefix."""

    def __init__(self, bucket: str, prefix: str, client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 object storage. Install with: pip install boto3") from e
            self._client = boto3.client("s3")
        return self._client

    def _key(self, path: str) -> str:
        return self.prefix + _safe_key(path)

    def put(self, path: str, data: bytes, content_type: str = "application/json") -> str:
        key = self._key(path)
        self._get_client().put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return f"s3://{self.bucket}/{key}"

    def get(self, path: str) -> bytes:
        resp = self._get_client().get_object(Bucket=self.bucket, Key=self._key(path))
        return resp["Body"].read()

    def delete(self, path: str) -> None:
        self._get_client().delete_object(Bucket=self.bucket, Key=self._key(path))


def get_object_store() -> ObjectStore:
    if config.OBJECT_STORE_BACKEND == "s3":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET required for the s3 object store")
        return S3ObjectStore(bucket=config.S3_BUCKET, prefix=config.S3_PREFIX)
    return FilesystemObjectStore(config.OBJECT_STORE_ROOT)

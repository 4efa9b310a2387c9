"""Object store adapters.

Keys are POSIX-style paths. Sources live under ``raw_videos/`` and HLS
outputs under ``transcoded_videos/<folder>/``.
"""

import logging
import os
import posixpath
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(path: str) -> str:
    """Content-Type by extension: HLS playlists and segments, otherwise binary."""
    return CONTENT_TYPES.get(posixpath.splitext(str(path))[1].lower(), DEFAULT_CONTENT_TYPE)


class ObjectStore(ABC):
    """Durable key/value blob storage."""

    @abstractmethod
    def get(self, key: str) -> BinaryIO:
        """Open ``key`` for reading. The caller closes the stream.

        Raises:
            StorageError: If the key does not exist or cannot be read.
        """

    @abstractmethod
    def put(self, key: str, stream: BinaryIO, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        """Write ``stream`` to ``key`` with the given Content-Type."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""

    @abstractmethod
    def list_prefix(self, prefix: str) -> List[str]:
        """All keys starting with ``prefix``, sorted."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Publicly resolvable URL of ``key``."""

    def download(self, key: str, path: Path) -> None:
        """Copy ``key`` to a local file."""
        stream = self.get(key)
        try:
            with open(path, "wb") as f:
                shutil.copyfileobj(stream, f)
        except OSError as e:
            raise StorageError(f"failed to write {path}: {e}", key=key) from e
        finally:
            stream.close()

    def put_file(self, key: str, path: Path, content_type: Optional[str] = None) -> None:
        """Upload a local file, guessing Content-Type from its extension."""
        with open(path, "rb") as f:
            self.put(key, f, content_type or content_type_for(str(path)))


class LocalObjectStore(ObjectStore):
    """Directory-backed store for development and tests."""

    def __init__(self, root: str, public_base_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._content_types: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        normalized = posixpath.normpath(key.lstrip("/"))
        if normalized.startswith("..") or normalized == ".":
            raise StorageError(f"invalid key {key!r}", key=key)
        return self.root / normalized

    def get(self, key: str) -> BinaryIO:
        path = self._path(key)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise StorageError(f"no such key {key}", key=key) from e
        except OSError as e:
            raise StorageError(f"cannot read {key}: {e}", key=key) from e

    def put(self, key: str, stream: BinaryIO, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                shutil.copyfileobj(stream, f)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"cannot write {key}: {e}", key=key) from e
        with self._lock:
            self._content_types[key] = content_type

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
        with self._lock:
            self._content_types.pop(key, None)

    def list_prefix(self, prefix: str) -> List[str]:
        keys = []
        for p in self.root.rglob("*"):
            if not p.is_file() or p.name.endswith(".part"):
                continue
            key = p.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def content_type(self, key: str) -> Optional[str]:
        """Content-Type recorded for ``key`` by this process."""
        with self._lock:
            return self._content_types.get(key)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()


class S3ObjectStore(ObjectStore):
    """S3 / MinIO adapter built on boto3."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        if not bucket:
            raise ValueError("S3ObjectStore requires a bucket")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.access_key = access_key
        self.secret_key = secret_key
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self):
        """Get or create the S3 client (clients are thread-safe, sessions are not)."""
        with self._client_lock:
            if self._client is None:
                session = boto3.session.Session(
                    aws_access_key_id=self.access_key,
                    aws_secret_access_key=self.secret_key,
                    region_name=self.region,
                )
                self._client = session.client(
                    "s3",
                    endpoint_url=self.endpoint_url,
                    config=BotoConfig(
                        s3={"addressing_style": "path"},
                        signature_version="s3v4",
                        retries={"max_attempts": 5, "mode": "standard"},
                    ),
                )
            return self._client

    def get(self, key: str) -> BinaryIO:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"cannot get s3://{self.bucket}/{key}: {e}", key=key) from e
        return response["Body"]

    def download(self, key: str, path: Path) -> None:
        try:
            self._get_client().download_file(self.bucket, key, str(path))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"cannot download s3://{self.bucket}/{key}: {e}", key=key) from e

    def put(self, key: str, stream: BinaryIO, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        try:
            self._get_client().upload_fileobj(
                stream, self.bucket, key, ExtraArgs={"ContentType": content_type}
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise StorageError(f"cannot put s3://{self.bucket}/{key}: {e}", key=key) from e

    def put_file(self, key: str, path: Path, content_type: Optional[str] = None) -> None:
        try:
            self._get_client().upload_file(
                str(path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type or content_type_for(str(path))},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise StorageError(f"cannot upload {path} to s3://{self.bucket}/{key}: {e}", key=key) from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"cannot delete s3://{self.bucket}/{key}: {e}", key=key) from e

    def list_prefix(self, prefix: str) -> List[str]:
        keys = []
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"cannot list s3://{self.bucket}/{prefix}: {e}", key=prefix) from e
        return sorted(keys)

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

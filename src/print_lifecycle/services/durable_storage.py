"""Durable document storage for paid print jobs.

Two backends share the ``DurableStorage`` interface:

* ``LocalDurableStorage`` copies files under ``{durable_path}/{folder}/``
  (development and tests).
* ``S3DurableStorage`` uploads to an S3 bucket with boto3.

Uploads are keyed by a caller-chosen ``object_id`` so repeating an upload
overwrites the same object instead of creating a duplicate.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    url: str
    object_id: str
    bytes: int


class DurableStorageError(Exception):
    """Backend-level upload/delete failure."""


class DurableStorage(ABC):
    """Long-lived object storage the staged file is migrated to."""

    @abstractmethod
    async def upload(self, local_path: Path, folder: str, object_id: str) -> StoredObject:
        """Store ``local_path`` as ``{folder}/{object_id}``. Idempotent per object id."""

    @abstractmethod
    async def delete(self, object_id: str) -> bool:
        """Remove an object. Returns False when it did not exist."""


class LocalDurableStorage(DurableStorage):
    """Filesystem backend.

    Objects are stored at ``{base_path}/{folder}/{object_id}{suffix}`` and
    addressed by ``file://`` URLs.
    """

    def __init__(self, base_path: str | None = None) -> None:
        from print_lifecycle.config import settings

        self._base = Path(base_path or settings.durable_path)

    def _find(self, object_id: str) -> Path | None:
        if not self._base.exists():
            return None
        for match in self._base.glob(f"*/{object_id}*"):
            if match.is_file() and match.stem == Path(object_id).name:
                return match
        return None

    async def upload(self, local_path: Path, folder: str, object_id: str) -> StoredObject:
        src = Path(local_path)
        if not src.is_file():
            raise DurableStorageError(f"Source file missing: {src}")
        dest_dir = self._base / folder
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / f"{object_id}{src.suffix.lower()}"
        shutil.copy2(src, dest)
        size = dest.stat().st_size
        logger.debug("Stored %s bytes → %s", size, dest)
        return StoredObject(url=dest.resolve().as_uri(), object_id=object_id, bytes=size)

    async def delete(self, object_id: str) -> bool:
        found = self._find(object_id)
        if found is None:
            return False
        found.unlink(missing_ok=True)
        logger.info("Deleted durable object %s", object_id)
        return True

    def resolve(self, object_id: str) -> Path | None:
        """Return the filesystem path of a stored object (for serving)."""
        return self._find(object_id)


class S3DurableStorage(DurableStorage):
    """S3 backend. boto3 is synchronous, so calls run in a worker thread."""

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        client=None,
    ) -> None:
        from print_lifecycle.config import settings

        self._bucket = bucket or settings.s3_bucket
        self._region = region or settings.s3_region
        self._client = client
        # object_id → key, so delete() does not need to know the folder
        self._keys: dict[str, str] = {}
        self._folder = settings.durable_folder

    def _get_s3_client(self):
        if self._client is None:
            from print_lifecycle.config import settings

            self._client = boto3.client(
                "s3",
                region_name=self._region,
                aws_access_key_id=settings.aws_access_key_id or None,
                aws_secret_access_key=settings.aws_secret_access_key or None,
            )
        return self._client

    def _url(self, key: str) -> str:
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    def _key_for(self, object_id: str, folder: str | None = None, suffix: str = "") -> str:
        return f"{folder or self._folder}/{object_id}{suffix}"

    def _upload_sync(self, src: Path, key: str) -> int:
        client = self._get_s3_client()
        client.upload_file(str(src), self._bucket, key)
        return src.stat().st_size

    async def upload(self, local_path: Path, folder: str, object_id: str) -> StoredObject:
        src = Path(local_path)
        key = self._key_for(object_id, folder, src.suffix.lower())
        try:
            size = await asyncio.to_thread(self._upload_sync, src, key)
        except (ClientError, BotoCoreError, OSError) as exc:
            logger.error("S3 upload failed for %s: %s", key, exc)
            raise DurableStorageError(str(exc)) from exc
        self._keys[object_id] = key
        logger.info("Uploaded %s to s3://%s/%s", src.name, self._bucket, key)
        return StoredObject(url=self._url(key), object_id=object_id, bytes=size)

    def _delete_sync(self, object_id: str) -> bool:
        client = self._get_s3_client()
        key = self._keys.pop(object_id, None)
        if key is None:
            resp = client.list_objects_v2(
                Bucket=self._bucket, Prefix=self._key_for(object_id), MaxKeys=1
            )
            contents = resp.get("Contents") or []
            if not contents:
                return False
            key = contents[0]["Key"]
        client.delete_object(Bucket=self._bucket, Key=key)
        return True

    async def delete(self, object_id: str) -> bool:
        try:
            deleted = await asyncio.to_thread(self._delete_sync, object_id)
        except ClientError as exc:
            logger.error("Failed to delete S3 object %s: %s", object_id, exc)
            raise DurableStorageError(str(exc)) from exc
        if deleted:
            logger.info("Deleted S3 object %s", object_id)
        return deleted


def build_durable_storage(backend: str | None = None) -> DurableStorage:
    """Pick the backend named by configuration (``local`` or ``s3``)."""
    from print_lifecycle.config import settings

    backend = (backend or settings.durable_backend).lower()
    if backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("durable_backend=s3 requires s3_bucket")
        return S3DurableStorage()
    if backend == "local":
        return LocalDurableStorage()
    raise ValueError(f"Unknown durable storage backend {backend!r}")

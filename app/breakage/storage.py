from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import requests
from sqlalchemy import event
from sqlalchemy.orm import Session

from app.breakage.errors import BreakageError

logger = logging.getLogger(__name__)


class StorageError(BreakageError):
    status_code = 503


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def get_bytes(self, key: str) -> bytes:
        f = self.open(key)
        try:
            return f.read()
        finally:
            f.close()


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        p = (self.root / safe_key).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Storage key escapes storage root: {key!r}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write {key!r}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except OSError as e:
            raise StorageError(f"Failed to read {key!r}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key!r}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read {key!r}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def get_bytes(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        body = self.open(key)
        try:
            return body.read()
        except (BotoCoreError, ClientError) as e:
            # e.g. ResponseStreamingError when the connection drops mid-read
            raise StorageError(f"Failed to read {key!r}: {e}") from e
        finally:
            body.close()

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {key!r}: {e}") from e


def is_remote_reference(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def fetch_reference(storage: Storage, ref: str, *, timeout: float = 30.0) -> bytes:
    """
    Resolve a photo reference to bytes.
    Storage keys go through the blob store; absolute URLs (imported rows) are fetched over HTTP.
    """
    if is_remote_reference(ref):
        try:
            resp = requests.get(ref, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"Failed to fetch {ref!r}: {e}") from e
        return resp.content
    return storage.get_bytes(ref)


def remove_quietly(storage: Storage, keys: list[str]) -> None:
    """Best-effort delete; remote references are never ours to remove."""
    for key in keys:
        if is_remote_reference(key):
            continue
        try:
            storage.delete(key)
        except StorageError as e:
            logger.warning("Could not remove stored photo %s: %s", key, e)


# ---------- Blob cleanup tied to the DB transaction ----------
_UPLOADED = "breakage_uploaded_blobs"
_DISCARDED = "breakage_discarded_blobs"


def track_uploads(s: Session, storage: Storage, keys: list[str]) -> None:
    """Blobs written for this transaction; removed again if it rolls back."""
    if keys:
        s.info.setdefault(_UPLOADED, []).append((storage, list(keys)))


def discard_after_commit(s: Session, storage: Storage, keys: list[str]) -> None:
    """Blobs no longer referenced; removed once the transaction commits."""
    if keys:
        s.info.setdefault(_DISCARDED, []).append((storage, list(keys)))


@event.listens_for(Session, "after_commit")
def _remove_discarded_blobs(session: Session) -> None:
    session.info.pop(_UPLOADED, None)
    for storage, keys in session.info.pop(_DISCARDED, []):
        remove_quietly(storage, keys)


@event.listens_for(Session, "after_soft_rollback")
def _remove_orphaned_uploads(session: Session, previous_transaction) -> None:
    if previous_transaction.parent is not None:
        return
    session.info.pop(_DISCARDED, None)
    for storage, keys in session.info.pop(_UPLOADED, []):
        remove_quietly(storage, keys)


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    # default local
    root = Path(config.get("STORAGE_ROOT") or os.path.join(os.getcwd(), "storage"))
    return LocalStorage(root=root)

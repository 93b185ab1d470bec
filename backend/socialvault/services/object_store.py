"""Binary object storage.

Backups keep their media and uploaded archives in a key/value object store.
Two backends share one async interface:

- ``S3ObjectStore``: any S3-compatible endpoint via boto3 (blocking calls run
  in a worker thread).
- ``LocalObjectStore``: a directory on disk for development and tests; signed
  URLs are HMAC tokens verified by ``verify_signed_token``.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import mimetypes
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Optional, Sequence
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


logger = logging.getLogger(__name__)

S3_DELETE_BATCH_SIZE = 1000


class ObjectStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: Optional[str] = None


@dataclass(frozen=True)
class SignedObjectToken:
    key: str
    method: str
    exp: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode("ascii"))


class ObjectStore(ABC):
    """Async key/value blob store with signed URL issuance."""

    @abstractmethod
    async def put_object(self, key: str, body: bytes, *, content_type: str | None = None) -> None:
        ...

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        ...

    @abstractmethod
    async def download_to_file(self, key: str, fileobj: BinaryIO) -> None:
        """Stream an object into an open binary file."""

    @abstractmethod
    async def copy_object(self, source_key: str, dest_key: str) -> None:
        ...

    @abstractmethod
    async def head_object(self, key: str) -> ObjectInfo | None:
        """Size/type of an object, or None when it does not exist."""

    @abstractmethod
    async def delete_objects(self, keys: Sequence[str]) -> list[str]:
        """Delete keys; returns the keys that could not be deleted."""

    @abstractmethod
    async def create_signed_get_url(self, key: str, *, expires_in: int) -> str:
        ...

    @abstractmethod
    async def create_signed_put_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str | None = None,
    ) -> str:
        ...


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str | None = None,
        client=None,
    ):
        cfg = BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=cfg,
        )
        self.bucket = bucket

    async def put_object(self, key: str, body: bytes, *, content_type: str | None = None) -> None:
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            await asyncio.to_thread(self.client.put_object, **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Upload failed for {key}: {e}") from e

    async def get_object(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Download failed for {key}: {e}") from e

    async def download_to_file(self, key: str, fileobj: BinaryIO) -> None:
        try:
            await asyncio.to_thread(self.client.download_fileobj, self.bucket, key, fileobj)
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Download failed for {key}: {e}") from e

    async def copy_object(self, source_key: str, dest_key: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.copy,
                {"Bucket": self.bucket, "Key": source_key},
                self.bucket,
                dest_key,
            )
        except (BotoCoreError, ClientError) as e:
            raise ObjectStoreError(f"Copy failed for {source_key}: {e}") from e

    async def head_object(self, key: str) -> ObjectInfo | None:
        try:
            response = await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise ObjectStoreError(f"Head failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Head failed for {key}: {e}") from e
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength") or 0),
            content_type=response.get("ContentType"),
        )

    async def delete_objects(self, keys: Sequence[str]) -> list[str]:
        failed: list[str] = []
        keys = [k for k in keys if k]
        for start in range(0, len(keys), S3_DELETE_BATCH_SIZE):
            chunk = keys[start:start + S3_DELETE_BATCH_SIZE]
            try:
                response = await asyncio.to_thread(
                    self.client.delete_objects,
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as e:
                raise ObjectStoreError(f"Delete failed: {e}") from e
            failed.extend(err.get("Key") for err in response.get("Errors", []) if err.get("Key"))
        return failed

    async def create_signed_get_url(self, key: str, *, expires_in: int) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=int(expires_in),
        )

    async def create_signed_put_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str | None = None,
    ) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if content_type:
            params["ContentType"] = content_type
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "put_object",
            Params=params,
            ExpiresIn=int(expires_in),
        )


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str | Path, *, secret_key: str | None = None, base_url: str = "/storage"):
        self.root = Path(root)
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        root = self.root.resolve()
        target = (root / key).resolve()
        if root not in target.parents:
            raise ObjectStoreError(f"Invalid object key: {key}")
        return target

    async def put_object(self, key: str, body: bytes, *, content_type: str | None = None) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise ObjectStoreError(f"Upload failed for {key}: {e}") from e

    async def get_object(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ObjectStoreError(f"Download failed for {key}: {e}") from e

    async def download_to_file(self, key: str, fileobj: BinaryIO) -> None:
        path = self._path_for(key)

        def _copy() -> None:
            with path.open("rb") as source:
                shutil.copyfileobj(source, fileobj)

        try:
            await asyncio.to_thread(_copy)
        except OSError as e:
            raise ObjectStoreError(f"Download failed for {key}: {e}") from e

    async def copy_object(self, source_key: str, dest_key: str) -> None:
        source = self._path_for(source_key)
        dest = self._path_for(dest_key)

        def _copy() -> None:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, dest)

        try:
            await asyncio.to_thread(_copy)
        except OSError as e:
            raise ObjectStoreError(f"Copy failed for {source_key}: {e}") from e

    async def head_object(self, key: str) -> ObjectInfo | None:
        path = self._path_for(key)
        if not path.is_file():
            return None
        content_type, _ = mimetypes.guess_type(path.name)
        return ObjectInfo(key=key, size=path.stat().st_size, content_type=content_type)

    async def delete_objects(self, keys: Sequence[str]) -> list[str]:
        failed: list[str] = []
        for key in keys:
            if not key:
                continue
            try:
                self._path_for(key).unlink(missing_ok=True)
            except (OSError, ObjectStoreError) as e:
                logger.warning("Local object delete failed for %s: %s", key, e)
                failed.append(key)
        return failed

    def _sign(self, key: str, method: str, expires_in: int) -> str:
        if not isinstance(self.secret_key, str) or not self.secret_key.strip():
            raise ObjectStoreError("SECRET_KEY must be set to issue signed object URLs")
        exp_dt = _utcnow() + timedelta(seconds=int(expires_in))
        payload = {"key": key, "method": method, "exp": int(exp_dt.timestamp())}
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        sig = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha256).digest()
        return f"{_b64url_encode(body)}.{_b64url_encode(sig)}"

    async def create_signed_get_url(self, key: str, *, expires_in: int) -> str:
        self._path_for(key)
        return f"{self.base_url}/{quote(key)}?token={self._sign(key, 'GET', expires_in)}"

    async def create_signed_put_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str | None = None,
    ) -> str:
        self._path_for(key)
        return f"{self.base_url}/{quote(key)}?token={self._sign(key, 'PUT', expires_in)}"


def verify_signed_token(token: str, *, secret_key: str | None) -> SignedObjectToken | None:
    """Validate a LocalObjectStore URL token; None when forged or expired."""
    if not isinstance(secret_key, str) or not secret_key.strip():
        return None
    if not isinstance(token, str) or "." not in token:
        return None

    body_b64, sig_b64 = token.split(".", 1)
    try:
        body = _b64url_decode(body_b64)
        sig = _b64url_decode(sig_b64)
    except (ValueError, TypeError):
        return None

    expected = hmac.new(secret_key.encode("utf-8"), body, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, sig):
        return None

    try:
        data = json.loads(body.decode("utf-8"))
        exp = int(data.get("exp"))
    except (ValueError, TypeError, AttributeError):
        return None

    key = str(data.get("key") or "").strip()
    method = str(data.get("method") or "").strip()
    if not key or method not in {"GET", "PUT"}:
        return None
    if _utcnow().timestamp() > exp:
        return None
    return SignedObjectToken(key=key, method=method, exp=exp)


def build_object_store(settings) -> ObjectStore:
    """Factory selecting the configured backend."""
    backend = (settings.OBJECT_STORE_BACKEND or "local").strip().lower()
    if backend == "s3":
        return S3ObjectStore(
            bucket=settings.S3_BUCKET,
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key=settings.S3_ACCESS_KEY_ID,
            secret_key=settings.S3_SECRET_ACCESS_KEY,
            region=settings.S3_REGION,
        )
    if backend == "local":
        return LocalObjectStore(settings.OBJECT_STORE_LOCAL_DIR, secret_key=settings.SECRET_KEY)
    raise ValueError(f"Unsupported OBJECT_STORE_BACKEND: {settings.OBJECT_STORE_BACKEND}")

import asyncio
import logging
import mimetypes
import posixpath
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import Any, BinaryIO, Final
from uuid import uuid4

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from gateway.core.config import MAX_URL_EXPIRY, Settings
from gateway.core.errors import (
    BackendUnavailable,
    BucketProvisioningFailed,
    DeleteFailed,
    DownloadFailed,
    ListFailed,
    ObjectNotFound,
    StatFailed,
    UploadFailed,
    URLSigningFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE: Final[str] = "application/octet-stream"
DEFAULT_CHUNK_SIZE: Final[int] = 64 * 1024

_NOT_FOUND_CODES: Final[frozenset[str]] = frozenset(
    {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
)
_BACKEND_ERRORS = (ClientError, BotoCoreError, asyncio.TimeoutError)

KeyStrategy = Callable[[str, str], str]


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_not_found(exc: ClientError) -> bool:
    return _error_code(exc) in _NOT_FOUND_CODES


def _sanitize_filename(filename: str) -> str:
    name = PurePosixPath(filename.replace("\\", "/")).name
    return name or "file"


def timestamp_key(prefix: str, filename: str) -> str:
    """Build ``<prefix><unix-seconds>-<filename>``.

    Two uploads of the same filename within one second map to the same key
    and the later one overwrites the earlier.
    """
    return f"{prefix}{int(time.time())}-{_sanitize_filename(filename)}"


def unique_key(prefix: str, filename: str) -> str:
    """Like :func:`timestamp_key` with a random suffix that avoids same-second collisions."""
    return f"{prefix}{int(time.time())}-{uuid4().hex[:8]}-{_sanitize_filename(filename)}"


KEY_STRATEGIES: Final[dict[str, KeyStrategy]] = {
    "timestamp": timestamp_key,
    "unique": unique_key,
}


@dataclass(frozen=True)
class ObjectDescriptor:
    key: str
    size: int
    content_type: str = DEFAULT_CONTENT_TYPE
    last_modified: datetime | None = None
    etag: str | None = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.key)


@dataclass
class ObjectStream:
    """An open object body that is read chunk by chunk."""

    descriptor: ObjectDescriptor
    body: Any
    chunk_size: int = DEFAULT_CHUNK_SIZE

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(self.body.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        self.body.close()


def build_s3_client(settings: Settings) -> Any:
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=settings.endpoint_url,
        aws_access_key_id=settings.minio_access_key,
        aws_secret_access_key=settings.minio_secret_key,
        region_name=settings.minio_location,
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            connect_timeout=settings.backend_timeout,
            read_timeout=settings.backend_timeout,
            retries={"max_attempts": settings.backend_max_attempts, "mode": "standard"},
        ),
    )


class StorageService:
    """S3-compatible storage gateway bound to a single bucket.

    Every backend call runs in a worker thread, so one instance can be shared
    by all concurrent requests. ``timeout`` bounds each call except uploads; when it expires
    the caller gets the operation's error and the worker thread is left to
    finish on its own.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        region: str = "us-east-1",
        *,
        upload_prefix: str = "uploads/",
        key_strategy: KeyStrategy = timestamp_key,
        timeout: float | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.region = region
        self.upload_prefix = upload_prefix
        self.key_strategy = key_strategy
        self.timeout = timeout
        self.chunk_size = chunk_size

    @classmethod
    def from_settings(cls, settings: Settings, client: Any | None = None) -> "StorageService":
        return cls(
            client if client is not None else build_s3_client(settings),
            settings.minio_bucket,
            settings.minio_location,
            upload_prefix=settings.upload_prefix,
            key_strategy=KEY_STRATEGIES[settings.upload_key_strategy],
            timeout=settings.backend_timeout,
            chunk_size=settings.download_chunk_size,
        )

    async def _call(
        self, func: Callable[..., Any], *, bounded: bool = True, **kwargs: Any
    ) -> Any:
        call = asyncio.to_thread(func, **kwargs)
        if not bounded or self.timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.timeout)

    def generate_upload_key(self, filename: str) -> str:
        return self.key_strategy(self.upload_prefix, filename)

    async def ensure_bucket(self) -> bool:
        """Create the bucket if it is missing. Returns True when it was created."""
        try:
            await self._call(self.client.head_bucket, Bucket=self.bucket)
        except ClientError as exc:
            if not _is_not_found(exc):
                raise BackendUnavailable(f"failed to check if bucket exists: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise BackendUnavailable(f"failed to check if bucket exists: {exc}") from exc
        else:
            logger.info("Bucket '%s' already exists", self.bucket)
            return False

        params: dict[str, Any] = {"Bucket": self.bucket}
        # us-east-1 is the implicit default and is rejected as a location constraint.
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        try:
            await self._call(self.client.create_bucket, **params)
        except ClientError as exc:
            if _error_code(exc) == "BucketAlreadyOwnedByYou":
                logger.info("Bucket '%s' already exists", self.bucket)
                return False
            raise BucketProvisioningFailed(f"failed to create bucket: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise BucketProvisioningFailed(f"failed to create bucket: {exc}") from exc

        logger.info("Bucket '%s' created successfully in %s", self.bucket, self.region)
        return True

    async def put_object(
        self,
        key: str,
        size: int,
        body: BinaryIO | bytes,
        content_type: str | None = None,
    ) -> ObjectDescriptor:
        """Store ``size`` bytes from ``body`` under ``key``, replacing any existing object.

        The declared size is sent as-is; a mismatch is reported by the backend.
        Uploads are exempt from ``timeout`` and are bounded only by botocore's
        connect and read timeouts, so a reported failure is never followed by a
        late write from an abandoned worker thread.
        """
        if not key:
            raise ValueError("object key must not be empty")
        content_type = content_type or DEFAULT_CONTENT_TYPE

        try:
            response = await self._call(
                self.client.put_object,
                bounded=False,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentLength=size,
                ContentType=content_type,
            )
        except _BACKEND_ERRORS as exc:
            raise UploadFailed(f"failed to upload file: {exc}") from exc

        logger.info("Object '%s' uploaded (size: %d bytes)", key, size)
        return ObjectDescriptor(
            key=key,
            size=size,
            content_type=content_type,
            last_modified=datetime.now(timezone.utc),
            etag=response.get("ETag"),
        )

    async def _get_object(self, key: str) -> dict[str, Any]:
        try:
            return await self._call(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(key) from exc
            raise DownloadFailed(f"failed to get object: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise DownloadFailed(f"failed to get object: {exc}") from exc

    async def open_object(self, key: str) -> ObjectStream:
        response = await self._get_object(key)
        descriptor = ObjectDescriptor(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            last_modified=response.get("LastModified"),
            etag=response.get("ETag"),
        )
        return ObjectStream(descriptor, response["Body"], self.chunk_size)

    async def get_object_bytes(self, key: str) -> bytes:
        """Read a whole object into memory. Use :meth:`open_object` for large files."""
        response = await self._get_object(key)
        body = response["Body"]
        try:
            data = await self._call(body.read)
        except (BotoCoreError, OSError, asyncio.TimeoutError) as exc:
            raise DownloadFailed(f"failed to read object data: {exc}") from exc
        finally:
            body.close()

        logger.info("Object '%s' read into memory (size: %d bytes)", key, len(data))
        return data

    async def list_objects(
        self,
        prefix: str = "",
        max_keys: int | None = None,
        with_content_type: bool = False,
    ) -> list[ObjectDescriptor]:
        """List every object under ``prefix``, without delimiter truncation.

        The order is whatever the backend returns. Listings carry no content
        type, so it is guessed from the key's extension unless
        ``with_content_type`` asks for a metadata lookup of every entry.
        """

        def _list() -> list[dict[str, Any]]:
            paginator = self.client.get_paginator("list_objects_v2")
            pagination = {"MaxItems": max_keys} if max_keys else {}
            contents: list[dict[str, Any]] = []
            for page in paginator.paginate(
                Bucket=self.bucket, Prefix=prefix, PaginationConfig=pagination
            ):
                contents.extend(page.get("Contents", []))
            return contents

        try:
            contents = await self._call(_list)
        except _BACKEND_ERRORS as exc:
            raise ListFailed(f"error listing objects: {exc}") from exc

        logger.info("Listed %d objects with prefix '%s'", len(contents), prefix)
        descriptors = [
            ObjectDescriptor(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                content_type=mimetypes.guess_type(item["Key"])[0] or DEFAULT_CONTENT_TYPE,
                last_modified=item.get("LastModified"),
                etag=item.get("ETag"),
            )
            for item in contents
        ]
        if with_content_type:
            descriptors = list(
                await asyncio.gather(*(self._stored_content_type(d) for d in descriptors))
            )
        return descriptors

    async def _stored_content_type(self, descriptor: ObjectDescriptor) -> ObjectDescriptor:
        try:
            stat = await self.stat_object(descriptor.key)
        except (ObjectNotFound, StatFailed) as exc:
            logger.warning("Keeping guessed content type for '%s': %s", descriptor.key, exc)
            return descriptor
        return replace(descriptor, content_type=stat.content_type)

    async def stat_object(self, key: str) -> ObjectDescriptor:
        try:
            response = await self._call(self.client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(key) from exc
            raise StatFailed(f"failed to check if object exists: {exc}") from exc
        except (BotoCoreError, asyncio.TimeoutError) as exc:
            raise StatFailed(f"failed to check if object exists: {exc}") from exc

        return ObjectDescriptor(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            last_modified=response.get("LastModified"),
            etag=response.get("ETag"),
        )

    async def object_exists(self, key: str) -> bool:
        try:
            await self.stat_object(key)
        except ObjectNotFound:
            return False
        return True

    async def delete_object(self, key: str) -> None:
        """Remove ``key``. Removing a missing key succeeds."""
        if not key:
            raise ValueError("object key must not be empty")
        try:
            await self._call(self.client.delete_object, Bucket=self.bucket, Key=key)
        except _BACKEND_ERRORS as exc:
            raise DeleteFailed(f"failed to delete object: {exc}") from exc
        logger.info("Object '%s' deleted", key)

    async def presigned_url(self, key: str, expiry: timedelta | int) -> str:
        """Mint a GET URL for ``key`` valid for ``expiry``.

        The object is not checked for existence first.
        """
        seconds = int(expiry.total_seconds()) if isinstance(expiry, timedelta) else int(expiry)
        if not 0 < seconds <= MAX_URL_EXPIRY:
            raise URLSigningFailed(
                f"expiry must be between 1 and {MAX_URL_EXPIRY} seconds, got {seconds}"
            )

        try:
            url = await self._call(
                self.client.generate_presigned_url,
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=seconds,
            )
        except _BACKEND_ERRORS as exc:
            raise URLSigningFailed(f"failed to generate presigned URL: {exc}") from exc

        logger.debug("Generated presigned URL for '%s' (valid for %ds)", key, seconds)
        return url

"""
S3-compatible object store client.

Thin wrapper over a boto3 S3 client. Works against AWS S3, Cloudflare R2 and
MinIO. Operations never retry; callers decide. "Not found" surfaces as
:class:`ObjectNotFound` so rollback code can treat an already-gone object as
success.
"""

import logging
from typing import BinaryIO, Iterator

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import ObjectNotFound, StorageFailure
from .limits import DEFAULT_CONTENT_TYPE
from .models import (
    DeleteFailure,
    DeleteManyResult,
    ObjectInfo,
    StoredObject,
    UploadResult,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})

# DeleteObjects accepts at most 1000 keys per request.
_DELETE_BATCH = 1000

DEFAULT_CHUNK_SIZE = 64 * 1024


def _error_code(exc: Exception) -> str | None:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def _error_message(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Message") or str(exc)
    return str(exc)


def _strip_etag(etag: str | None) -> str:
    return (etag or "").replace('"', "")


class ObjectStore:
    """
    Blob storage for model files and derived artifacts.

    Usage:
        store = ObjectStore.from_settings(Settings.from_env())
        store.upload("org/model/v1/sources/part-1a2b3c4d.stl", data, "application/sla")
        url = store.presign_download_url("org/model/v1/sources/part-1a2b3c4d.stl", 15)
    """

    def __init__(self, client, bucket: str, endpoint_url: str | None = None):
        self.client = client
        self.bucket = bucket
        self.endpoint_url = endpoint_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        client = boto3.client(
            "s3",
            endpoint_url=settings.storage_endpoint_url,
            region_name=settings.storage_region,
            aws_access_key_id=settings.storage_access_key,
            aws_secret_access_key=settings.storage_secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
        return cls(client, settings.storage_bucket, settings.storage_endpoint_url)

    def _fail(self, exc: Exception, key: str | None, operation: str) -> StorageFailure:
        """Map a boto error to the library's storage error types."""
        message = _error_message(exc)
        if _error_code(exc) in _NOT_FOUND_CODES:
            return ObjectNotFound(f"Object not found: {key}", key=key, operation=operation)
        logger.error("Storage %s failed for %s: %s", operation, key, message)
        return StorageFailure(
            f"Failed to {operation} {key or self.bucket}: {message}",
            key=key,
            operation=operation,
        )

    # --- Writes ---

    def upload(
        self,
        key: str,
        data: bytes | BinaryIO,
        content_type: str | None = None,
    ) -> UploadResult:
        """Single PUT; the object is either fully visible at ``key`` or absent."""
        if isinstance(data, (bytes, bytearray)):
            size = len(data)
        else:
            start = data.tell()
            data.seek(0, 2)
            size = data.tell() - start
            data.seek(start)

        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or DEFAULT_CONTENT_TYPE,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, key, "upload") from e

        logger.debug("Uploaded %s (%d bytes)", key, size)
        return UploadResult(key=key, size=size, etag=_strip_etag(response.get("ETag")))

    def delete(self, key: str) -> None:
        """Delete one object. A missing key is not an error."""
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return
            raise self._fail(e, key, "delete") from e

    def delete_many(self, keys: list[str]) -> DeleteManyResult:
        """Delete many objects, reporting per-key failures instead of raising."""
        result = DeleteManyResult()
        for i in range(0, len(keys), _DELETE_BATCH):
            batch = keys[i:i + _DELETE_BATCH]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
                )
            except (ClientError, BotoCoreError) as e:
                message = _error_message(e)
                logger.warning("Batch delete of %d keys failed: %s", len(batch), message)
                result.failed.extend(DeleteFailure(key=k, error=message) for k in batch)
                continue

            result.deleted.extend(d.get("Key", "") for d in response.get("Deleted", []))
            for err in response.get("Errors", []):
                if err.get("Code") in _NOT_FOUND_CODES:
                    result.deleted.append(err.get("Key", ""))
                    continue
                result.failed.append(
                    DeleteFailure(key=err.get("Key", ""), error=err.get("Message") or "Unknown error")
                )
        return result

    # --- Reads ---

    def get_bytes(self, key: str) -> StoredObject:
        """Load a whole object into memory (thumbnails, 3MF parsing)."""
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, key, "download") from e
        return StoredObject(
            data=body,
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            size=response.get("ContentLength") or len(body),
        )

    def get_stream(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Stream an object in chunks without materializing it."""
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, key, "stream") from e

        body = response["Body"]

        def _chunks() -> Iterator[bytes]:
            try:
                yield from body.iter_chunks(chunk_size)
            except (ClientError, BotoCoreError) as e:
                raise self._fail(e, key, "stream") from e
            finally:
                body.close()

        return _chunks()

    def head_metadata(self, key: str) -> ObjectInfo:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, key, "head") from e
        return ObjectInfo(
            size=response.get("ContentLength", 0),
            etag=_strip_etag(response.get("ETag")),
            last_modified=response.get("LastModified"),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
        )

    def exists(self, key: str) -> bool:
        try:
            self.head_metadata(key)
        except ObjectNotFound:
            return False
        return True

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, prefix, "list") from e
        return keys

    def presign_download_url(self, key: str, ttl_minutes: int = 60) -> str:
        """Time-boxed GET URL; the bytes never pass through this process."""
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_minutes * 60,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._fail(e, key, "presign") from e

    def file_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"s3://{self.bucket}/{key}"

    def health(self) -> bool:
        try:
            self.client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Bucket %s is not reachable: %s", self.bucket, _error_message(e))
            return False
        return True

"""S3 / Cloudflare R2 blob storage for photos and composites."""
from __future__ import annotations

import logging
import mimetypes
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import quote, unquote

import boto3
from botocore.client import BaseClient
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from heroframe.config import RetryConfig, StorageConfig
from heroframe.errors import StorageConflict, StorageUnavailable
from heroframe.services.retry import call_with_retry

logger = logging.getLogger(__name__)

ANONYMOUS_SCOPE = "anonymous"
PRESIGNED_GET_TTL = 7 * 24 * 3600

_SAFE_SEGMENT = re.compile(r"[^0-9A-Za-z._-]")
_CONFLICT_CODES = {"PreconditionFailed", "ConditionalRequestConflict", "412"}
_TRANSIENT_CODES = {
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}
_TRANSIENT_BOTO = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


class TransientStorageFailure(StorageUnavailable):
    retriable = True


@dataclass(frozen=True)
class StoredObject:
    url: str
    path: str
    content_type: str = "application/octet-stream"


def build_s3_client(config: StorageConfig) -> BaseClient:
    """Create the boto3 client; owned and closed by the process entry point."""

    if not config.is_configured:
        raise StorageUnavailable("Object storage is not configured")
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=config.endpoint,
        aws_access_key_id=config.access_key,
        aws_secret_access_key=config.secret_key,
        region_name=config.region,
        config=BotoConfig(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def scope_segment(owner_scope: str | None) -> str:
    text = (owner_scope or "").strip()
    if not text:
        return ANONYMOUS_SCOPE
    return _SAFE_SEGMENT.sub("_", text)


def extension_for(suggested_name: str | None, content_type: str | None) -> str:
    name = (suggested_name or "").rsplit("/", 1)[-1]
    if "." in name:
        ext = _SAFE_SEGMENT.sub("", name.rsplit(".", 1)[-1].lower())
        if ext:
            return ext
    guessed = mimetypes.guess_extension(content_type or "") or ".png"
    return {".jpe": "jpg", ".jpeg": "jpg"}.get(guessed, guessed.lstrip("."))


def make_key(owner_scope: str | None, suggested_name: str | None, content_type: str | None) -> str:
    """``<scope>/<epoch-ms>-<uuid4>.<ext>``: unique per call, partitioned by owner."""

    stamp = int(time.time() * 1000)
    ext = extension_for(suggested_name, content_type)
    return f"{scope_segment(owner_scope)}/{stamp}-{uuid.uuid4().hex}.{ext}"


def _error_code(exc: ClientError) -> str:
    error = exc.response.get("Error", {}) if exc.response else {}
    return str(error.get("Code") or "")


def _http_status(exc: ClientError) -> int:
    meta = exc.response.get("ResponseMetadata", {}) if exc.response else {}
    try:
        return int(meta.get("HTTPStatusCode") or 0)
    except (TypeError, ValueError):
        return 0


class BlobStore:
    """Writes never overwrite: every put is conditional on the key being absent."""

    def __init__(
        self,
        client: BaseClient,
        config: StorageConfig,
        *,
        retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not config.bucket:
            raise StorageUnavailable("Object storage bucket is not configured")
        self.client = client
        self.bucket = config.bucket
        self.public_base = (config.public_base or "").rstrip("/") or None
        self.retry = retry or RetryConfig()
        self._sleep = sleep

    # -- urls -------------------------------------------------------------

    def url_for(self, key: str) -> str:
        if self.public_base:
            return f"{self.public_base}/{quote(key.lstrip('/'))}"
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=PRESIGNED_GET_TTL,
                HttpMethod="GET",
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageUnavailable(
                "Failed to generate download URL", details={"key": key}
            ) from exc

    def key_for_url(self, url: str | None) -> str | None:
        """Map a public URL back to its storage key; foreign URLs give ``None``."""

        if not url or not self.public_base:
            return None
        prefix = f"{self.public_base}/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):].split("?", 1)[0]) or None

    # -- writes -----------------------------------------------------------

    def _put_once(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except ClientError as exc:
            code = _error_code(exc)
            status = _http_status(exc)
            if code in _CONFLICT_CODES or status == 412:
                raise StorageConflict(
                    f"Storage key already exists: {key}", details={"key": key}
                ) from exc
            if code in _TRANSIENT_CODES or status >= 500:
                raise TransientStorageFailure(
                    f"Storage write failed: {code or status}", details={"key": key}
                ) from exc
            raise StorageUnavailable(
                f"Storage write rejected: {code or status}", details={"key": key}
            ) from exc
        except _TRANSIENT_BOTO as exc:
            raise TransientStorageFailure(
                f"Storage connection failed: {exc}", details={"key": key}
            ) from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Storage write failed: {exc}", details={"key": key}) from exc

    def put_object_at(self, data: bytes, key: str, content_type: str) -> StoredObject:
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("object payload must be bytes")
        storage_key = key.lstrip("/")
        call_with_retry(
            lambda: self._put_once(storage_key, bytes(data), content_type),
            policy=self.retry,
            retry_on=(TransientStorageFailure,),
            label=f"blob put {storage_key}",
            sleep=self._sleep,
        )
        url = self.url_for(storage_key)
        logger.info(
            "blob.stored",
            extra={"key": storage_key, "url": url, "bytes": len(data), "content_type": content_type},
        )
        return StoredObject(url=url, path=storage_key, content_type=content_type)

    def put_object(
        self,
        data: bytes,
        suggested_name: str | None,
        content_type: str,
        owner_scope: str | None = None,
    ) -> StoredObject:
        key = make_key(owner_scope, suggested_name, content_type)
        return self.put_object_at(data, key, content_type)

    def delete_object(self, key: str) -> None:
        call_with_retry(
            lambda: self._delete_once(key),
            policy=self.retry,
            retry_on=(TransientStorageFailure,),
            label=f"blob delete {key}",
            sleep=self._sleep,
        )
        logger.info("blob.deleted", extra={"key": key})

    def _delete_once(self, key: str) -> Any:
        try:
            return self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = _error_code(exc)
            if code in _TRANSIENT_CODES or _http_status(exc) >= 500:
                raise TransientStorageFailure(
                    f"Storage delete failed: {code}", details={"key": key}
                ) from exc
            raise StorageUnavailable(
                f"Storage delete rejected: {code}", details={"key": key}
            ) from exc
        except _TRANSIENT_BOTO as exc:
            raise TransientStorageFailure(
                f"Storage connection failed: {exc}", details={"key": key}
            ) from exc
        except BotoCoreError as exc:
            raise StorageUnavailable(f"Storage delete failed: {exc}", details={"key": key}) from exc


__all__ = [
    "ANONYMOUS_SCOPE",
    "BlobStore",
    "StoredObject",
    "build_s3_client",
    "extension_for",
    "make_key",
    "scope_segment",
]

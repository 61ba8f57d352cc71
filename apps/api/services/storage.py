"""S3-compatible object storage gateway (signed URLs, proxy reads, deletes).

Authorization is the caller's job: every method here assumes the access
check already passed. Store failures surface as StorageUnavailableError and
missing objects as NotFoundError, never as authorization errors.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from services.errors import NotFoundError, StorageUnavailableError

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
DELETE_BATCH_SIZE = 1000
RAW_PREFIX = "raw/"
MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}

CORS_ALLOWED_METHODS = ["PUT", "GET", "HEAD", "POST", "DELETE"]
CORS_EXPOSE_HEADERS = ["ETag", "x-amz-request-id", "x-amz-version-id"]


@dataclass
class StoredObject:
    key: str
    body: Any
    content_type: str
    content_length: Optional[int] = None

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        try:
            yield from self.body.iter_chunks(chunk_size)
        finally:
            self.body.close()


@dataclass
class PrefixDeleteResult:
    prefix: str
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", ""))
    return ""


def output_directory(final_key: Optional[str], asset_type: Optional[str]) -> Optional[str]:
    """Return the directory prefix of a multi-file output, or None for single files."""
    if not final_key or "/" not in final_key:
        return None
    directory = final_key[: final_key.rfind("/") + 1]
    if asset_type == "tileset" and final_key.endswith("tileset.json"):
        return directory
    if final_key.startswith(("models/", "tiles/")) or "/models/" in final_key:
        return directory
    return None


def sanitize_file_name(file_name: str) -> str:
    base = (file_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload.bin"


def build_raw_key(project_id: str, user_id: str, file_name: str, timestamp_ms: int) -> str:
    return f"{RAW_PREFIX}{project_id}/{user_id}/{timestamp_ms}-{sanitize_file_name(file_name)}"


def guess_content_type(key: str, fallback: Optional[str] = None) -> str:
    if key.endswith(".glb"):
        return "model/gltf-binary"
    if key.endswith((".json", ".geojson")):
        return "application/json"
    if key.endswith(".b3dm") or key.endswith(".pnts"):
        return "application/octet-stream"
    guessed, _ = mimetypes.guess_type(key)
    return guessed or fallback or "application/octet-stream"


class StorageGateway:
    """Thin async facade over a boto3 S3 client bound to one private bucket."""

    def __init__(self, client: Any, bucket: str):
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings: Any) -> "StorageGateway":
        client = boto3.client(
            "s3",
            endpoint_url=settings.R2_ENDPOINT or None,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY or None,
            region_name=settings.R2_REGION or "auto",
            config=BotoConfig(signature_version="s3v4"),
        )
        return cls(client, settings.R2_PRIVATE_BUCKET)

    async def _call(self, operation: str, key: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ClientError as exc:
            if _error_code(exc) in MISSING_OBJECT_CODES:
                raise NotFoundError("Object not found in storage") from exc
            logger.error("Storage %s failed for %s/%s: %s", operation, self.bucket, key, exc)
            raise StorageUnavailableError(f"Storage {operation} failed") from exc
        except BotoCoreError as exc:
            logger.error("Storage %s failed for %s/%s: %s", operation, self.bucket, key, exc)
            raise StorageUnavailableError(f"Storage {operation} failed") from exc

    async def issue_upload_slot(self, key: str, content_type: str, ttl_seconds: int) -> str:
        """Presign a PUT for ``key``. Re-uploading to the same key overwrites it."""
        return await self._call(
            "presign_put",
            key,
            self.client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=int(ttl_seconds),
        )

    async def issue_read_slot(
        self,
        key: str,
        *,
        filename: Optional[str] = None,
        disposition: str = "inline",
        ttl_seconds: int = 900,
    ) -> str:
        name = (filename or key.rsplit("/", 1)[-1] or "asset").replace('"', "")
        return await self._call(
            "presign_get",
            key,
            self.client.generate_presigned_url,
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ResponseContentDisposition": f'{disposition}; filename="{name}"',
            },
            ExpiresIn=int(ttl_seconds),
        )

    async def open_object(self, key: str, fallback_content_type: Optional[str] = None) -> StoredObject:
        response = await self._call("get", key, self.client.get_object, Bucket=self.bucket, Key=key)
        body = response.get("Body")
        if body is None:
            raise NotFoundError("Object not found in storage")
        content_type = fallback_content_type or response.get("ContentType") or guess_content_type(key)
        return StoredObject(
            key=key,
            body=body,
            content_type=content_type,
            content_length=response.get("ContentLength"),
        )

    async def delete_object(self, key: str) -> None:
        await self._call("delete", key, self.client.delete_object, Bucket=self.bucket, Key=key)

    async def delete_objects_under_prefix(self, prefix: str) -> PrefixDeleteResult:
        """Delete every object under ``prefix``, page by page.

        Listing continues until no continuation token remains. Per-object and
        per-batch delete failures are collected in the result; only a listing
        failure stops the walk, since nothing further can be enumerated.
        """
        result = PrefixDeleteResult(prefix=prefix)
        if not prefix:
            result.errors.append("Refusing to delete an empty prefix")
            return result

        continuation_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": LIST_PAGE_SIZE}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            try:
                page = await self._call("list", prefix, self.client.list_objects_v2, **params)
            except StorageUnavailableError as exc:
                result.errors.append(f"{prefix}: listing failed ({exc.detail})")
                break

            keys = [item["Key"] for item in page.get("Contents", []) or [] if item.get("Key")]
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                await self._delete_batch(keys[start:start + DELETE_BATCH_SIZE], result)

            continuation_token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not continuation_token:
                break

        if result.errors:
            logger.warning(
                "Prefix delete %s removed %d objects with %d errors",
                prefix,
                result.deleted_count,
                len(result.errors),
            )
        return result

    async def _delete_batch(self, keys: List[str], result: PrefixDeleteResult) -> None:
        if not keys:
            return
        try:
            response = await asyncio.to_thread(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error("Batch delete of %d keys failed: %s", len(keys), exc)
            result.errors.extend(f"{key}: {exc}" for key in keys)
            return

        failed = set()
        for error in response.get("Errors", []) or []:
            key = error.get("Key", "")
            failed.add(key)
            result.errors.append(f"{key}: {error.get('Message') or error.get('Code') or 'delete failed'}")
        deleted = [item.get("Key") for item in response.get("Deleted", []) or [] if item.get("Key")]
        if not deleted and not response.get("Errors"):
            deleted = list(keys)
        result.deleted.extend(key for key in deleted if key not in failed)

    async def put_cors_rule(self, allowed_origins: List[str]) -> Dict[str, Any]:
        rule = {
            "AllowedOrigins": list(allowed_origins),
            "AllowedMethods": list(CORS_ALLOWED_METHODS),
            "AllowedHeaders": ["*"],
            "ExposeHeaders": list(CORS_EXPOSE_HEADERS),
            "MaxAgeSeconds": 3600,
        }
        await self._call(
            "put_cors",
            "",
            self.client.put_bucket_cors,
            Bucket=self.bucket,
            CORSConfiguration={"CORSRules": [rule]},
        )
        return rule

    async def put_raw_expiration_rule(self, days: int) -> Dict[str, Any]:
        rule = {
            "ID": "raw-expiration",
            "Status": "Enabled",
            "Filter": {"Prefix": RAW_PREFIX},
            "Expiration": {"Days": int(days)},
        }
        await self._call(
            "put_lifecycle",
            RAW_PREFIX,
            self.client.put_bucket_lifecycle_configuration,
            Bucket=self.bucket,
            LifecycleConfiguration={"Rules": [rule]},
        )
        return rule

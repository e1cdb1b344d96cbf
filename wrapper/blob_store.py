"""
S3 object store client.

Thin wrapper over boto3 that exposes list/get/put/head/delete against a
bucket + key prefix. Works with any S3-compatible endpoint (Railway object
storage, R2, MinIO, AWS).

Not-found is reported as ObjectNotFound (or False/empty where the operation
allows it); every other botocore error propagates unchanged.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Iterator, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from wrapper_config import S3Settings

CONTENT_TYPES = {
    ".json": "application/json",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".js": "application/javascript",
    ".ts": "application/typescript",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


class ObjectNotFound(Exception):
    """Requested key does not exist in the bucket."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


@dataclass
class StoredObject:
    key: str
    body: object  # botocore StreamingBody (has .read / .iter_chunks / .close)
    size: int
    last_modified: Optional[datetime]
    content_type: str


def content_type_for(path: str) -> str:
    """Content type from the file extension, octet-stream when unknown."""
    return CONTENT_TYPES.get(PurePosixPath(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def _is_not_found(err: ClientError) -> bool:
    error = err.response.get("Error", {})
    status = err.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return error.get("Code") in _NOT_FOUND_CODES or status == 404


def create_s3_client(settings: S3Settings):
    """Create a boto3 S3 client from explicit settings (never the ambient AWS chain)."""
    key_id = settings.access_key_id
    print("[s3] Initializing S3 client:", flush=True)
    print(f"[s3]   bucket: {settings.bucket or '(not set)'}", flush=True)
    print(f"[s3]   prefix: {settings.prefix}", flush=True)
    print(f"[s3]   endpoint: {settings.endpoint or '(not set)'}", flush=True)
    print(f"[s3]   region: {settings.region}", flush=True)
    print(f"[s3]   accessKeyId: {key_id[:8] + '...' if key_id else '(not set)'}", flush=True)
    print(f"[s3]   secretAccessKey: {'***' if settings.secret_access_key else '(not set)'}", flush=True)

    if not settings.bucket:
        print("[s3] WARNING: No S3 bucket configured! Set AWS_S3_BUCKET_NAME.", flush=True)
    if not settings.endpoint:
        print("[s3] WARNING: No S3 endpoint configured! Set AWS_ENDPOINT_URL.", flush=True)

    config = BotoConfig(
        connect_timeout=5,
        read_timeout=30,
        retries={"max_attempts": 3, "mode": "standard"},
        # Railway uses virtual-hosted-style URLs
        s3={"addressing_style": "virtual"},
    )
    return boto3.client(
        "s3",
        endpoint_url=settings.endpoint or None,
        region_name=settings.region or None,
        aws_access_key_id=settings.access_key_id or None,
        aws_secret_access_key=settings.secret_access_key or None,
        config=config,
    )


class BlobStore:
    """Key/prefix access to one bucket."""

    def __init__(self, client, bucket: str, prefix: str = ""):
        self.client = client
        self.bucket = bucket
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings: S3Settings) -> "BlobStore":
        return cls(create_s3_client(settings), settings.bucket, settings.prefix)

    # ------------------------------------------------------------
    # Key mapping
    # ------------------------------------------------------------

    def key_for(self, relative_path: str) -> str:
        """Storage key for a path relative to the local root."""
        return self.prefix + relative_path.replace("\\", "/").lstrip("/")

    def relative_for(self, key: str) -> str:
        """Inverse of key_for. Keys outside the prefix are returned as-is."""
        if key.startswith(self.prefix):
            return key[len(self.prefix):]
        return key

    # ------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------

    def list_keys(self, prefix: Optional[str] = None) -> Iterator[str]:
        """Yield every key under prefix (defaults to the store prefix).

        Pagination is handled here. Each call starts a fresh listing.
        A bucket that does not exist yet lists as empty.
        """
        paginator = self.client.get_paginator("list_objects_v2")
        pages = paginator.paginate(Bucket=self.bucket, Prefix=self.prefix if prefix is None else prefix)
        try:
            for page in pages:
                for obj in page.get("Contents", []) or []:
                    yield obj["Key"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchBucket":
                print(f"[s3] Bucket does not exist yet: {self.bucket}", flush=True)
                return
            raise

    def get_object(self, key: str) -> StoredObject:
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFound(key) from e
            raise
        return StoredObject(
            key=key,
            body=resp["Body"],
            size=resp.get("ContentLength", 0),
            last_modified=resp.get("LastModified"),
            content_type=resp.get("ContentType", DEFAULT_CONTENT_TYPE),
        )

    def get(self, key: str) -> bytes:
        obj = self.get_object(key)
        try:
            return obj.body.read()
        finally:
            obj.body.close()

    def put(self, key: str, body: bytes, content_type: Optional[str] = None):
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type or content_type_for(key),
        )

    def head(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise

    def delete(self, key: str):
        self.client.delete_object(Bucket=self.bucket, Key=key)

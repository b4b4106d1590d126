"""R2 (S3-compatible) persistence for source snapshots and app bundles.

Cloudflare R2 speaks the S3 API, so the client is a plain boto3 S3 client
pointed at the account's R2 endpoint. Two buckets are used: the snapshot
bucket (R2_BUCKET_NAME) for versioned copies of the project source tree, and
the public images bucket (R2_IMAGES_BUCKET_NAME) that also serves exported
iOS bundles.
"""

from __future__ import annotations

import os
from pathlib import Path

import boto3

_r2_client = None

CONTENT_TYPES: dict[str, str] = {
    "js": "text/javascript",
    "jsx": "text/javascript",
    "mjs": "text/javascript",
    "ts": "text/typescript",
    "tsx": "text/typescript",
    "json": "application/json",
    "css": "text/css",
    "scss": "text/css",
    "html": "text/html",
    "xml": "application/xml",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "webp": "image/webp",
    "md": "text/markdown",
    "txt": "text/plain",
    "map": "application/json",
}


def require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} environment variable is required")
    return value


def get_r2_client():
    global _r2_client
    if _r2_client is None:
        account_id = require_env("R2_ACCOUNT_ID")
        _r2_client = boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=os.environ.get("R2_ACCESS_KEY_ID"),
            aws_secret_access_key=os.environ.get("R2_SECRET_ACCESS_KEY"),
            region_name="auto",
        )
    return _r2_client


def get_bucket() -> str:
    return require_env("R2_BUCKET_NAME")


def get_images_bucket() -> str:
    return require_env("R2_IMAGES_BUCKET_NAME")


def get_images_public_url() -> str:
    return require_env("R2_IMAGES_PUBLIC_URL").rstrip("/")


def content_type_for(path: str) -> str:
    extension = Path(path).suffix.lstrip(".").lower()
    return CONTENT_TYPES.get(extension, "application/octet-stream")


def upload_file(
    local_path: Path,
    bucket: str,
    key: str,
    *,
    metadata: dict[str, str] | None = None,
) -> None:
    """Upload one local file. Blocking; call through asyncio.to_thread."""
    extra_args: dict[str, object] = {"ContentType": content_type_for(key)}
    if metadata:
        extra_args["Metadata"] = metadata
    get_r2_client().upload_file(
        str(local_path), bucket, key, ExtraArgs=extra_args,
    )


def list_keys(bucket: str, prefix: str) -> list[str]:
    """Every object key under prefix. Blocking; call through asyncio.to_thread."""
    paginator = get_r2_client().get_paginator("list_objects_v2")
    keys: list[str] = []
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        keys.extend(item["Key"] for item in page.get("Contents", []))
    return keys


def download_bytes(bucket: str, key: str) -> bytes:
    """Blocking; call through asyncio.to_thread."""
    response = get_r2_client().get_object(Bucket=bucket, Key=key)
    return response["Body"].read()

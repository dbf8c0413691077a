import re
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import boto3
from flask import current_app

DEFAULT_BUCKET = "property-management"
UPLOAD_URL_EXPIRY_SECONDS = 600


class StorageError(RuntimeError):
    """Raised when object storage is not configured."""


@lru_cache(maxsize=4)
def _s3_client(
    endpoint_url: str | None,
    region_name: str | None,
    access_key: str | None,
    secret_key: str | None,
):
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url or None,
        region_name=region_name or None,
        aws_access_key_id=access_key or None,
        aws_secret_access_key=secret_key or None,
    )


def is_configured() -> bool:
    config = current_app.config
    return bool(config.get("STORAGE_ENDPOINT_URL") or config.get("STORAGE_ACCESS_KEY"))


def get_client():
    config = current_app.config
    return _s3_client(
        config.get("STORAGE_ENDPOINT_URL"),
        config.get("STORAGE_REGION"),
        config.get("STORAGE_ACCESS_KEY"),
        config.get("STORAGE_SECRET_KEY"),
    )


def get_bucket_name() -> str:
    name = (current_app.config.get("STORAGE_BUCKET") or DEFAULT_BUCKET).strip()
    if not name:
        raise StorageError("STORAGE_BUCKET is not set")
    return name


def sanitize_filename(filename: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "")


def make_attachment_key(filename: str, *, is_public: bool, now: datetime | None = None) -> str:
    timestamp = int((now or datetime.now(UTC)).timestamp() * 1000)
    visibility = "public" if is_public else "private"
    return f"{visibility}/attachments/{timestamp}-{sanitize_filename(filename)}"


def public_object_url(key: str) -> str:
    base = (
        current_app.config.get("STORAGE_PUBLIC_URL")
        or current_app.config.get("STORAGE_ENDPOINT_URL")
        or ""
    ).rstrip("/")
    return f"{base}/{get_bucket_name()}/{key}"


def presign_put_object(
    *, key: str, content_type: str | None, expires_in: int = UPLOAD_URL_EXPIRY_SECONDS
) -> dict[str, Any]:
    bucket = get_bucket_name()
    params: dict[str, Any] = {"Bucket": bucket, "Key": key}
    if content_type:
        params["ContentType"] = str(content_type)

    url = get_client().generate_presigned_url(
        ClientMethod="put_object",
        Params=params,
        ExpiresIn=max(60, min(3600, int(expires_in or UPLOAD_URL_EXPIRY_SECONDS))),
    )
    return {"bucket": bucket, "key": key, "url": url}


def presign_get_object(*, key: str, expires_in: int = UPLOAD_URL_EXPIRY_SECONDS) -> dict[str, Any]:
    bucket = get_bucket_name()
    url = get_client().generate_presigned_url(
        ClientMethod="get_object",
        Params={"Bucket": bucket, "Key": key},
        ExpiresIn=max(60, min(3600, int(expires_in or UPLOAD_URL_EXPIRY_SECONDS))),
    )
    return {"bucket": bucket, "key": key, "url": url}


def upload_bytes(*, key: str, body: bytes, content_type: str = "application/pdf") -> str:
    get_client().put_object(
        Bucket=get_bucket_name(), Key=key, Body=body, ContentType=content_type
    )
    return public_object_url(key)

"""S3-compatible object store access: inventory, download and upload."""

from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from batch import RetryPolicy, StageOutcome, run_each
from errors import NetworkError
from models import ObjectRecord

LOGGER = logging.getLogger(__name__)

_STORE_ERRORS = (BotoCoreError, ClientError)

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".webp": "image/webp",
    ".json": "application/json",
    ".pdf": "application/pdf",
    ".zip": "application/zip",
}


def make_client(
    endpoint_url: str,
    access_key_id: str,
    secret_access_key: str,
    region_name: str = "auto",
) -> Any:
    """Create an S3 client for one independently-credentialed endpoint.

    A malformed endpoint or region raises NetworkError.
    """
    LOGGER.info("Connecting to object store: %s", endpoint_url)
    try:
        return boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region_name,
        )
    except (ValueError, BotoCoreError) as exc:
        raise NetworkError(f"cannot create client for {endpoint_url}: {exc}") from exc


def list_objects(client: Any, bucket: str, *, strict: bool = False) -> list[ObjectRecord]:
    """List every object in ``bucket`` by following continuation tokens.

    When a page cannot be fetched the listing stops there. In best-effort mode
    (the default) the objects gathered so far are returned; with ``strict``
    a NetworkError is raised instead.
    """
    objects: list[ObjectRecord] = []
    token: str | None = None
    pages = 0

    while True:
        request: dict[str, Any] = {"Bucket": bucket}
        if token:
            request["ContinuationToken"] = token
        try:
            page = client.list_objects_v2(**request)
        except _STORE_ERRORS as exc:
            if strict:
                raise NetworkError(f"listing {bucket} failed after {len(objects)} objects: {exc}") from exc
            LOGGER.error(
                "Listing %s stopped at page %s, continuing with %s objects: %s",
                bucket,
                pages + 1,
                len(objects),
                exc,
            )
            break

        pages += 1
        for item in page.get("Contents", []):
            objects.append(ObjectRecord(key=item["Key"], size=int(item.get("Size") or 0)))

        token = page.get("NextContinuationToken")
        if not token:
            break

    LOGGER.info("Inventory: bucket=%s pages=%s objects=%s", bucket, pages, len(objects))
    return objects


def download_object(client: Any, bucket: str, key: str, destination: Path) -> Path:
    """Download ``key`` to ``destination``; raises NetworkError."""
    try:
        client.download_file(bucket, key, str(destination))
    except _STORE_ERRORS as exc:
        raise NetworkError(f"download of {key} failed: {exc}") from exc
    return destination


def object_md5(client: Any, bucket: str, key: str, chunk_size: int = 1 << 20) -> str:
    """Stream ``key`` from the store and return the hex MD5 of its bytes."""
    digest = hashlib.md5()
    try:
        body = client.get_object(Bucket=bucket, Key=key)["Body"]
        for chunk in body.iter_chunks(chunk_size):
            digest.update(chunk)
    except _STORE_ERRORS as exc:
        raise NetworkError(f"fetching {key} failed: {exc}") from exc
    return digest.hexdigest()


def put_file(
    client: Any,
    bucket: str,
    path: Path,
    *,
    key: str | None = None,
    content_type: str | None = None,
    retry: RetryPolicy | None = None,
) -> str:
    """Upload one local file, retrying per ``retry``; returns the object key.

    Raises NetworkError once every attempt has failed.
    """
    retry = retry or RetryPolicy()
    key = key or path.name
    content_type = content_type or CONTENT_TYPES.get(path.suffix.lower()) or (
        mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    )
    body = path.read_bytes()

    def _put() -> None:
        client.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)

    try:
        retry.call(_put, retry_on=_STORE_ERRORS, description=f"upload of {key}")
    except _STORE_ERRORS as exc:
        raise NetworkError(f"upload failed after {retry.attempts} attempt(s): {exc}") from exc
    LOGGER.info("%s: uploaded (%s)", key, content_type)
    return key


def upload_directory(
    client: Any,
    bucket: str,
    directory: Path,
    suffix: str,
    *,
    retry: RetryPolicy | None = None,
) -> StageOutcome:
    """Upload every ``*suffix`` file in ``directory``; failures are collected, not raised."""
    files = sorted(path for path in directory.glob(f"*{suffix}") if path.is_file())
    LOGGER.info("Uploading %s %s file(s) from %s", len(files), suffix, directory)
    return run_each(
        f"upload {suffix}",
        files,
        lambda path: put_file(client, bucket, path, retry=retry),
        label=lambda path: path.name,
    )

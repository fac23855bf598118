"""Client for the backend service that tracks uploaded-but-unpublished files."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

import requests

from errors import NetworkError, ParseError
from models import FileStatus, PendingFile

REQUEST_TIMEOUT_SECONDS = 30.0

LOGGER = logging.getLogger(__name__)


def fetch_pending_files(
    backend_url: str,
    token: str,
    *,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> list[PendingFile]:
    """Return every file the backend has not published yet."""
    body = _request("GET", f"{backend_url.rstrip('/')}/api/file/notPublished", token, timeout=timeout)
    if not body.get("success"):
        raise NetworkError(f"backend refused to list pending files: {_dump(body)}")

    files = body.get("files")
    if not isinstance(files, list):
        raise ParseError("backend response has no 'files' list")

    pending = [_parse_pending_file(item) for item in files]
    LOGGER.info("Backend: %s pending file(s)", len(pending))
    return pending


def publish_files(
    backend_url: str,
    token: str,
    ids: Iterable[int],
    *,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> None:
    """Ask the backend to publish ``ids``; a missing ``success`` flag is an error."""
    id_list = sorted(ids)
    body = _request(
        "POST",
        f"{backend_url.rstrip('/')}/api/file/publish",
        token,
        payload={"ids": id_list},
        timeout=timeout,
    )
    if body.get("success") is not True:
        raise NetworkError(f"backend refused to publish {len(id_list)} file(s): {_dump(body)}")
    LOGGER.info("Backend: published %s file(s)", len(id_list))


def _parse_pending_file(item: Any) -> PendingFile:
    if not isinstance(item, dict):
        raise ParseError(f"unexpected pending-file entry: {item!r}")
    try:
        status = FileStatus(item.get("status"))
    except ValueError:
        raise ParseError(f"unknown file status {item.get('status')!r}") from None
    file_id = item.get("id")
    file_name = item.get("fileName")
    if not isinstance(file_id, int) or not isinstance(file_name, str):
        raise ParseError(f"pending-file entry lacks id or fileName: {item!r}")
    return PendingFile(
        id=file_id,
        file_name=file_name,
        status=status,
        uploader=item.get("uploader") or "",
        created_at=item.get("createdAt"),
        file_size=item.get("fileSize"),
        upload_time=item.get("uploadTime"),
        error_message=item.get("errorMessage"),
    )


def _request(
    method: str,
    url: str,
    token: str,
    *,
    payload: dict[str, Any] | None = None,
    timeout: float,
) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"}
    try:
        response = requests.request(
            method=method,
            url=url,
            headers=headers,
            json=payload,
            timeout=timeout,
        )
        response.raise_for_status()
        body = response.json()
    except requests.RequestException as exc:
        raise NetworkError(f"{method} {url} failed: {exc}") from exc
    except ValueError as exc:
        raise NetworkError(f"{method} {url} returned non-JSON body") from exc

    if not isinstance(body, dict):
        raise NetworkError(f"{method} {url} returned unexpected body: {body!r}")
    return body


def _dump(body: dict[str, Any]) -> str:
    return json.dumps(body, ensure_ascii=False)

"""Decide which pending uploads are ready to publish, and publish them."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from backend_client import REQUEST_TIMEOUT_SECONDS, publish_files
from models import PendingFile

LOGGER = logging.getLogger(__name__)


def select_publish_candidates(
    local_ids: Iterable[str],
    pending: Iterable[PendingFile],
) -> tuple[list[int], list[PendingFile]]:
    """Match validated metadata ids against pending uploads.

    Returns the backend ids to publish and the pending files left over.
    Callers carry on with the leftover list so a file published in this run
    is no longer treated as pending.
    """
    local = set(local_ids)
    publish_ids: list[int] = []
    remaining: list[PendingFile] = []
    for item in pending:
        if item.document_id in local:
            publish_ids.append(item.id)
        else:
            remaining.append(item)
    LOGGER.info("Publish candidates: %s of %s pending file(s)", len(publish_ids), len(publish_ids) + len(remaining))
    return publish_ids, remaining


def publish_candidates(
    backend_url: str,
    token: str,
    ids: list[int],
    *,
    dry_run: bool = False,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> int:
    """Publish ``ids`` and return how many were sent; raises NetworkError on refusal."""
    if not ids:
        LOGGER.info("Nothing to publish")
        return 0
    if dry_run:
        LOGGER.info("[dry-run] Would publish ids: %s", sorted(ids))
        return 0
    LOGGER.info("Publishing ids: %s", sorted(ids))
    publish_files(backend_url, token, ids, timeout=timeout)
    return len(ids)

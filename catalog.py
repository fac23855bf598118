"""Merge validated metadata into the catalog JSON and archive it."""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from batch import RetryPolicy
from isbn import hyphenate_isbn
from models import BookData, DocumentRecord, ObjectRecord
from object_store import put_file

CATALOG_KEY = "metadata2.json"

LOGGER = logging.getLogger(__name__)


def merge_catalog(
    records: Iterable[DocumentRecord],
    objects: Iterable[ObjectRecord],
) -> list[DocumentRecord]:
    """Attach object sizes and hyphenate Book ISBNs.

    The size comes from ``<id>.pdf`` or else ``<id>.zip``; it stays ``None``
    when neither is in the inventory.
    """
    sizes = {obj.key: obj.size for obj in objects}
    merged: list[DocumentRecord] = []
    missing = 0
    for record in records:
        filesize = sizes.get(f"{record.id}.pdf", sizes.get(f"{record.id}.zip"))
        if filesize is None:
            missing += 1
            LOGGER.warning("%s: no object found, filesize left empty", record.id)
        data = record.data
        if isinstance(data, BookData):
            data = dataclasses.replace(data, isbn=tuple(hyphenate_isbn(isbn) for isbn in data.isbn))
        merged.append(dataclasses.replace(record, data=data, filesize=filesize))

    LOGGER.info("Catalog: %s record(s), %s without size", len(merged), missing)
    return merged


def record_to_dict(record: DocumentRecord) -> dict[str, Any]:
    """Catalog form of one record; ``filesize`` sits inside ``data``."""
    data = dataclasses.asdict(record.data)
    data["filesize"] = record.filesize
    return {
        "id": record.id,
        "url": record.url,
        "type": record.type.value,
        "data": _jsonable(data),
    }


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def write_catalog(records: Iterable[DocumentRecord], path: Path) -> Path:
    entries = [record_to_dict(record) for record in records]
    path.write_text(json.dumps(entries, ensure_ascii=False), encoding="utf-8")
    LOGGER.info("Catalog JSON written to %s (%s entries)", path, len(entries))
    return path


def upload_catalog(
    client: Any,
    bucket: str,
    path: Path,
    *,
    key: str = CATALOG_KEY,
    retry: RetryPolicy | None = None,
) -> str:
    """Put the catalog into the archival store; raises NetworkError."""
    LOGGER.info("Uploading catalog to archive bucket %s", bucket)
    return put_file(client, bucket, path, key=key, content_type="application/json", retry=retry)

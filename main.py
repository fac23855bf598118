"""CLI entrypoint for the document metadata pipeline."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from backend_client import fetch_pending_files
from batch import StageOutcome
from catalog import merge_catalog, upload_catalog, write_catalog
from config import ARCHIVE_STORE, BACKEND, PRIMARY_STORE, Settings, load_settings
from covers import ScratchDirs, download_sources, generate_pdf_covers, generate_zip_previews
from differ import needs_cover
from errors import ConsistencyError, PipelineError, StageError
from metadata import ValidationReport, validate_directory
from models import DocumentRecord, FileStatus, ObjectRecord, PendingFile
from object_store import list_objects, make_client, object_md5, upload_directory
from publisher import publish_candidates, select_publish_candidates


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(
        description="Validate document metadata, generate covers, publish and build the catalog"
    )
    parser.add_argument("--dir", default=None, help="Metadata directory (defaults to $DIR)")
    parser.add_argument(
        "--mode",
        choices=["check", "check-remote", "sync"],
        default="sync",
        help=(
            "'check': validate metadata files locally. "
            "'check-remote': also check objects in storage and pending uploads. "
            "'sync' (default): full run, covers, publish and catalog."
        ),
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="In sync mode, render covers and the catalog locally without uploading or publishing",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _primary_client(settings: Settings) -> Any:
    return make_client(
        settings.s3_url,
        settings.access_key_id,
        settings.secret_access_key,
        region_name=settings.s3_region,
    )


def _report(report: ValidationReport) -> int:
    print(report.summary_line())
    if not report.ok:
        logging.error("%s metadata file(s) failed validation", len(report.failures))
        return 1
    return 0


def run_check(settings: Settings) -> int:
    """Validate every metadata file without touching the network."""
    report = validate_directory(settings.metadata_dir, domain=settings.files_domain)
    return _report(report)


def content_verifier(
    client: Any,
    bucket: str,
    pending: list[PendingFile],
) -> Callable[[DocumentRecord], None]:
    """Build a check that re-hashes the stored object of every not-yet-published upload."""
    pending_by_key = {item.file_name: item for item in pending}

    def verify(record: DocumentRecord) -> None:
        item = pending_by_key.get(record.object_key)
        if item is None or item.status is FileStatus.PUBLISHED:
            return
        actual = object_md5(client, bucket, record.object_key)
        if actual != record.id.lower():
            raise ConsistencyError(f"stored object hashes to {actual}, not {record.id}")

    return verify


def run_check_remote(settings: Settings) -> int:
    """Validate metadata against the primary store and the backend pending list."""
    settings.require(*PRIMARY_STORE, *BACKEND)
    client = _primary_client(settings)
    objects = list_objects(client, settings.bucket, strict=settings.inventory_strict)
    pending = fetch_pending_files(
        settings.backend_url, settings.backend_token, timeout=settings.request_timeout_seconds
    )
    report = validate_directory(
        settings.metadata_dir,
        domain=settings.files_domain,
        inventory_keys={obj.key for obj in objects},
        content_check=content_verifier(client, settings.bucket, pending),
    )
    return _report(report)


def _upload_covers(client: Any, settings: Settings, scratch: ScratchDirs) -> None:
    outcomes: list[StageOutcome] = [
        upload_directory(client, settings.bucket, scratch.jpg, ".jpg", retry=settings.upload_retry),
        upload_directory(client, settings.bucket, scratch.webp, ".webp", retry=settings.upload_retry),
    ]
    failures = [failure for outcome in outcomes for failure in outcome.failures]
    uploaded = sum(len(outcome.results) for outcome in outcomes)
    logging.info("Covers uploaded: success=%s failed=%s", uploaded, len(failures))
    if failures:
        raise StageError("upload", failures)


def generate_covers(
    client: Any,
    settings: Settings,
    objects: list[ObjectRecord],
    pending: list[PendingFile],
) -> ScratchDirs:
    """Download documents lacking a cover and render jpg/webp covers for them."""
    queue = needs_cover(objects, [item.file_name for item in pending])
    scratch = ScratchDirs.under(settings.scratch_dir).prepare()
    download_sources(client, settings.bucket, objects, queue, scratch)

    generate_pdf_covers(scratch).raise_for_failures()
    generate_zip_previews(
        scratch,
        settings.filelist_url,
        strict=settings.zip_preview_strict,
        timeout=settings.request_timeout_seconds,
    ).raise_for_failures()
    return scratch


def run_sync(settings: Settings, dry_run: bool) -> int:
    """Run one full reconciliation cycle."""
    settings.require(*PRIMARY_STORE, *BACKEND, *ARCHIVE_STORE, "filelist_url")
    client = _primary_client(settings)
    objects = list_objects(client, settings.bucket, strict=settings.inventory_strict)
    pending = fetch_pending_files(
        settings.backend_url, settings.backend_token, timeout=settings.request_timeout_seconds
    )

    report = validate_directory(
        settings.metadata_dir,
        domain=settings.files_domain,
        inventory_keys={obj.key for obj in objects},
    )

    # Files published in this run still get their covers generated below.
    publish_ids, still_pending = select_publish_candidates(report.ids, pending)

    scratch = generate_covers(client, settings, objects, still_pending)
    if dry_run:
        logging.info("[dry-run] Covers left in %s, nothing uploaded", scratch.jpg.parent)
    else:
        _upload_covers(client, settings, scratch)

    publish_candidates(
        settings.backend_url,
        settings.backend_token,
        publish_ids,
        dry_run=dry_run,
        timeout=settings.request_timeout_seconds,
    )

    merged = merge_catalog(report.records, objects)
    catalog_path = write_catalog(merged, Path(settings.metadata_dir) / settings.catalog_key)
    if not dry_run:
        archive = make_client(
            settings.r2_url,
            settings.r2_access_key_id,
            settings.r2_secret_access_key,
            region_name=settings.s3_region,
        )
        upload_catalog(
            archive,
            settings.r2_bucket,
            catalog_path,
            key=settings.catalog_key,
            retry=settings.upload_retry,
        )

    print(report.summary_line())
    if not report.ok:
        logging.error("Run complete with %s invalid metadata file(s)", len(report.failures))
        return 1
    logging.info("All done")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the selected mode."""
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    settings = load_settings()
    if args.dir:
        settings = dataclasses.replace(settings, metadata_dir=args.dir)

    try:
        settings.require("metadata_dir")
        if not Path(settings.metadata_dir).is_dir():
            logging.error("The metadata directory does not exist: %s", settings.metadata_dir)
            return 1
        if args.mode == "check":
            return run_check(settings)
        if args.mode == "check-remote":
            return run_check_remote(settings)
        return run_sync(settings, dry_run=args.dry_run)
    except (PipelineError, RuntimeError, OSError) as exc:
        logging.error("Run failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())

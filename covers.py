"""Cover artifact generation.

Raw documents missing a cover are downloaded into a scratch directory. A pdf
gets its first page rendered; a zip archive gets a file-tree preview drawn
by an external rendering service. Each cover is written as a JPEG and as a
WebP kept under a size budget.
"""

from __future__ import annotations

import hashlib
import io
import logging
import shutil
import zipfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import fitz  # PyMuPDF
import requests
from PIL import Image

from batch import StageOutcome, run_each
from errors import IntegrityError, NetworkError
from models import ObjectRecord
from object_store import download_object

LOGGER = logging.getLogger(__name__)

TARGET_WIDTH = 2000
MAX_HEIGHT = 2000
JPEG_QUALITY = 85

WEBP_BUDGET_BYTES = 50 * 1024
WEBP_TARGET_BYTES = 48 * 1024
WEBP_MIN_QUALITY = 5
WEBP_MAX_QUALITY = 100

PREVIEW_HEIGHT = 425
PREVIEW_WIDTH = 300
PREVIEW_FONT_SIZE = 14
REQUEST_TIMEOUT_SECONDS = 30.0

_UTF8_NAME_FLAG = 0x800


@dataclass(frozen=True, slots=True)
class ScratchDirs:
    """Scratch locations for raw downloads and the two cover formats."""

    raw: Path
    jpg: Path
    webp: Path

    @classmethod
    def under(cls, root: str | Path) -> ScratchDirs:
        root = Path(root)
        return cls(raw=root / "raw", jpg=root / "jpg", webp=root / "webp")

    def prepare(self) -> ScratchDirs:
        """Empty and recreate all three directories; OSError is stage-fatal."""
        for directory in (self.raw, self.jpg, self.webp):
            if directory.exists():
                shutil.rmtree(directory)
            directory.mkdir(parents=True)
        return self


# ---------------------------------------------------------------------------
# Download and integrity
# ---------------------------------------------------------------------------


def download_sources(
    client: Any,
    bucket: str,
    objects: Iterable[ObjectRecord],
    doc_ids: set[str],
    scratch: ScratchDirs,
) -> StageOutcome:
    """Download the raw pdf/zip of every id in ``doc_ids`` into ``scratch.raw``.

    Failed downloads are skipped; the next run picks them up again.
    """
    wanted = [obj for obj in objects if obj.stem in doc_ids and obj.extension in ("pdf", "zip")]
    LOGGER.info("Downloading %s raw file(s)", len(wanted))
    return run_each(
        "download",
        wanted,
        lambda obj: download_object(client, bucket, obj.key, scratch.raw / obj.key),
        label=lambda obj: obj.key,
        skip_on=(NetworkError,),
    )


def file_md5(path: Path, chunk_size: int = 1 << 16) -> str:
    digest = hashlib.md5()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_content_hash(path: Path) -> None:
    """Raise IntegrityError unless the file hashes to its own stem."""
    actual = file_md5(path)
    if actual != path.stem.lower():
        raise IntegrityError(f"content hash {actual} does not match id {path.stem}")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_pdf_cover(path: Path) -> Image.Image:
    """Render the first page at TARGET_WIDTH (height capped), landscape pages turned 90 degrees."""
    with fitz.open(str(path)) as document:
        if document.page_count == 0:
            raise ValueError("pdf has no pages")
        page = document[0]
        width, height = page.rect.width, page.rect.height
        rotation = 90 if width > height else 0
        if rotation:
            width, height = height, width

        zoom = TARGET_WIDTH / width
        if height * zoom > MAX_HEIGHT:
            zoom = MAX_HEIGHT / height
        matrix = fitz.Matrix(zoom, zoom).prerotate(rotation)
        pixmap = page.get_pixmap(matrix=matrix, alpha=False)
        return Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)


def _entry_name(info: zipfile.ZipInfo) -> str:
    # Names without the UTF-8 flag were decoded as cp437 by zipfile; recover
    # the raw bytes and try UTF-8 before the legacy Chinese codepage.
    if info.flag_bits & _UTF8_NAME_FLAG:
        return info.filename
    raw = info.filename.encode("cp437")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("gb18030", errors="replace")


def _is_ignored(parts: list[str]) -> bool:
    return parts[0] == "__MACOSX" or any(
        part.startswith(".") or part.startswith("~$") for part in parts
    )


def build_tree(zip_path: Path) -> list[dict[str, Any]]:
    """Turn an archive listing into nested ``{type, name, children}`` nodes."""
    root: list[dict[str, Any]] = []
    with zipfile.ZipFile(zip_path) as archive:
        for info in archive.infolist():
            parts = [part for part in _entry_name(info).strip("/").split("/") if part]
            if not parts or _is_ignored(parts):
                continue

            children = root
            for index, part in enumerate(parts):
                is_last = index == len(parts) - 1
                node_type = "file" if is_last and not info.is_dir() else "folder"
                node = next((child for child in children if child["name"] == part), None)
                if node is None:
                    node = {"type": node_type, "name": part}
                    if node_type == "folder":
                        node["children"] = []
                    children.append(node)
                elif node["type"] != node_type:
                    raise ValueError(f"conflict: {part} is both {node['type']} and {node_type}")
                if node_type == "file":
                    break
                children = node["children"]
    return root


def request_zip_preview(
    render_url: str,
    tree: list[dict[str, Any]],
    *,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> Image.Image:
    """Have the rendering service rasterize ``tree``; raises NetworkError."""
    payload = {
        "height": PREVIEW_HEIGHT,
        "width": PREVIEW_WIDTH,
        "fontSize": PREVIEW_FONT_SIZE,
        "files": tree,
    }
    try:
        response = requests.post(render_url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise NetworkError(f"preview service failed: {exc}") from exc

    try:
        image = Image.open(io.BytesIO(response.content))
        image.load()
    except OSError as exc:
        raise NetworkError(f"preview service returned an unreadable image: {exc}") from exc
    return image


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def webp_retry_quality(encoded_size: int) -> int:
    """Quality for the single re-encode of an over-budget WebP."""
    quality = int(WEBP_TARGET_BYTES / encoded_size * 100)
    return max(WEBP_MIN_QUALITY, min(WEBP_MAX_QUALITY, quality))


def _webp_bytes(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)
    return buffer.getvalue()


def encode_webp(image: Image.Image) -> bytes:
    """Encode at quality 100; if over budget, re-encode once at an estimated quality.

    The second result is kept even when it is still over budget.
    """
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGB")
    data = _webp_bytes(image, WEBP_MAX_QUALITY)
    if len(data) <= WEBP_BUDGET_BYTES:
        return data

    quality = webp_retry_quality(len(data))
    LOGGER.debug("WebP is %s bytes at quality 100, re-encoding at %s", len(data), quality)
    return _webp_bytes(image, quality)


def save_covers(image: Image.Image, doc_id: str, scratch: ScratchDirs) -> tuple[Path, Path]:
    """Write ``<id>.jpg`` and ``<id>.webp`` into the scratch cover directories."""
    jpg_path = scratch.jpg / f"{doc_id}.jpg"
    webp_path = scratch.webp / f"{doc_id}.webp"
    image.convert("RGB").save(jpg_path, format="JPEG", quality=JPEG_QUALITY)
    webp_path.write_bytes(encode_webp(image))
    return jpg_path, webp_path


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _raw_files(scratch: ScratchDirs, suffix: str) -> list[Path]:
    # Object keys keep their case, so ".PDF" downloads must match too.
    return sorted(
        path for path in scratch.raw.iterdir() if path.is_file() and path.suffix.lower() == suffix
    )


def generate_pdf_covers(scratch: ScratchDirs) -> StageOutcome:
    """Render covers for every downloaded pdf.

    Files whose content does not hash to their id are not rendered. Every
    file is attempted; callers fail the stage afterwards if any failed.
    """
    pdfs = _raw_files(scratch, ".pdf")

    def _cover(path: Path) -> str:
        LOGGER.info("Processing pdf: %s", path.name)
        verify_content_hash(path)
        save_covers(render_pdf_cover(path), path.stem, scratch)
        return path.stem

    return run_each("pdf covers", pdfs, _cover, label=lambda path: path.name)


def generate_zip_previews(
    scratch: ScratchDirs,
    render_url: str,
    *,
    strict: bool = False,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> StageOutcome:
    """Render file-tree previews for every downloaded zip.

    By default a renderer failure or an unreadable archive only skips that
    file; with ``strict`` they count as stage failures like the pdf path.
    """
    archives = _raw_files(scratch, ".zip")

    def _preview(path: Path) -> str:
        LOGGER.info("Processing zip: %s", path.name)
        tree = build_tree(path)
        save_covers(request_zip_preview(render_url, tree, timeout=timeout), path.stem, scratch)
        return path.stem

    return run_each(
        "zip previews",
        archives,
        _preview,
        label=lambda path: path.name,
        skip_on=() if strict else (NetworkError, zipfile.BadZipFile, ValueError),
    )

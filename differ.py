"""Work out which documents are missing a cover artifact."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from models import ObjectRecord

LOGGER = logging.getLogger(__name__)

RAW_EXTENSIONS = frozenset({"pdf", "zip"})


@dataclass(frozen=True, slots=True)
class ArtifactRequirement:
    needs_jpg: bool
    needs_webp: bool

    @property
    def needs_cover(self) -> bool:
        return self.needs_jpg or self.needs_webp


def artifact_requirements(
    objects: Iterable[ObjectRecord],
    pending_file_names: Iterable[str] = (),
) -> dict[str, ArtifactRequirement]:
    """Map every raw document id to which derived covers it still lacks.

    Raw documents that the backend still tracks as pending (matched by
    object key) are left out.
    """
    objects = list(objects)
    pending = set(pending_file_names)

    have_jpg = {obj.stem for obj in objects if obj.extension == "jpg"}
    have_webp = {obj.stem for obj in objects if obj.extension == "webp"}
    raw_ids = {
        obj.stem
        for obj in objects
        if obj.extension in RAW_EXTENSIONS and obj.key not in pending
    }
    return {
        doc_id: ArtifactRequirement(needs_jpg=doc_id not in have_jpg, needs_webp=doc_id not in have_webp)
        for doc_id in raw_ids
    }


def needs_cover(
    objects: Iterable[ObjectRecord],
    pending_file_names: Iterable[str] = (),
) -> set[str]:
    """Ids missing either the jpg or the webp cover: (raw - jpg) | (raw - webp)."""
    requirements = artifact_requirements(objects, pending_file_names)
    missing = {doc_id for doc_id, requirement in requirements.items() if requirement.needs_cover}
    LOGGER.info("Documents needing a cover: %s of %s", len(missing), len(requirements))
    LOGGER.debug("Cover queue: %s", sorted(missing))
    return missing

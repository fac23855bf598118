"""ISBN-13 normalization, hyphenation and the per-run uniqueness registry."""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable

import isbnlib

_ISBN_CHARS = re.compile(r"^[0-9][0-9\- ]*[0-9]$")


def normalize_isbn(raw: str) -> str:
    """Strip hyphens and spaces: ``978-7-111-40772-0`` -> ``9787111407720``."""
    return isbnlib.canonical(raw)


def is_valid_isbn13(raw: str) -> bool:
    """True when ``raw`` (hyphenated or not) is a checksum-valid ISBN-13."""
    if not isinstance(raw, str) or not _ISBN_CHARS.match(raw.strip()):
        return False
    digits = normalize_isbn(raw)
    return len(digits) == 13 and isbnlib.is_isbn13(digits)


def hyphenate_isbn(raw: str) -> str:
    """Return the canonical hyphenated ISBN-13.

    Falls back to the bare 13 digits when the registration group is not in
    the range table shipped with isbnlib.
    """
    digits = normalize_isbn(raw)
    if not is_valid_isbn13(digits):
        raise ValueError(f"not a valid ISBN-13: {raw!r}")
    return isbnlib.mask(digits, separator="-") or digits


class ISBNRegistry:
    """Normalized ISBN -> id of the document that first claimed it.

    Created once per run and filled in file-iteration order, so the first
    occurrence of an ISBN wins and later ones are reported as duplicates.
    """

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)

    def __contains__(self, isbn: str) -> bool:
        return self.owner(isbn) is not None

    def owner(self, isbn: str) -> str | None:
        key = normalize_isbn(isbn)
        with self._lock:
            return self._owners.get(key)

    def claim(self, isbns: Iterable[str], owner: str, *, commit: bool = True) -> dict[str, str]:
        """Check ``isbns`` for collisions and register them for ``owner``.

        Returns ``{isbn: existing_owner}`` for every collision; an ISBN listed
        twice by the same book collides with ``owner`` itself. Nothing is
        registered when a collision is found or ``commit`` is false.
        """
        normalized = [normalize_isbn(isbn) for isbn in isbns]
        with self._lock:
            conflicts: dict[str, str] = {}
            seen: set[str] = set()
            for isbn in normalized:
                if isbn in self._owners:
                    conflicts[isbn] = self._owners[isbn]
                elif isbn in seen:
                    conflicts[isbn] = owner
                seen.add(isbn)
            if commit and not conflicts:
                for isbn in normalized:
                    self._owners[isbn] = owner
            return conflicts

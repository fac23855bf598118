"""Metadata file parsing and validation.

A metadata file is a YAML mapping ``{id, url, type, data}`` whose ``data``
payload depends on ``type``. Parsing is two-phase: the file is loaded into
plain Python values, then ``data`` is decoded into the payload class picked
by the ``type`` discriminator. Validation then runs every rule and reports
all violations of a record together.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from batch import ItemFailure, run_each
from errors import ConsistencyError, ParseError, PipelineError, RecordRejected, ValidationError
from isbn import ISBNRegistry, is_valid_isbn13
from models import BookData, Course, DocData, DocumentRecord, DocumentType, TestData, TimeRange

LOGGER = logging.getLogger(__name__)

DEFAULT_FILES_DOMAIN = "byrdocs.org"
METADATA_SUFFIX = ".yml"

_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{32}$")
_YEAR_PATTERN = re.compile(r"^\d{4}$")
_INT_PATTERN = re.compile(r"^\d+$")

# Canonical label first; legacy labels found in existing metadata follow.
COURSE_TYPES = ("undergraduate", "graduate", "本科", "研究生")
TEST_STAGES = ("midterm", "final", "期中", "期末")
SEMESTERS = ("first", "second", "First", "Second")
TEST_CONTENT = ("original-question", "answer", "原题", "答案")
DOC_CONTENT = (
    "mind-map",
    "question-bank",
    "answer",
    "key-points",
    "slides",
    "思维导图",
    "题库",
    "答案",
    "知识点",
    "课件",
)
TEST_FILETYPES = ("pdf", "zip")
DOC_FILETYPES = ("pdf", "zip")
BOOK_FILETYPES = ("pdf",)

_TEST_FIELDS = {"title", "college", "course", "time", "filetype", "content"}
_BOOK_FIELDS = {
    "title",
    "authors",
    "translators",
    "edition",
    "publisher",
    "publish_year",
    "isbn",
    "filetype",
}
_DOC_FIELDS = {"title", "filetype", "course", "content"}
_COURSE_FIELDS = {"type", "name"}
_TIME_FIELDS = {"start", "end", "semester", "stage"}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_metadata_file(path: str | Path) -> DocumentRecord:
    """Read and decode one metadata file; raises ParseError."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(f"cannot read file: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ParseError(f"invalid YAML: {exc}") from exc
    return parse_document(raw)


def parse_document(raw: Any) -> DocumentRecord:
    """Decode an already-loaded YAML value into a DocumentRecord."""
    if not isinstance(raw, Mapping):
        raise ParseError("metadata must be a mapping")

    doc_id = _require_str(raw, "id", "")
    url = _require_str(raw, "url", "")
    type_value = raw.get("type")
    try:
        doc_type = DocumentType(type_value)
    except ValueError:
        raise ParseError(f"unknown type {type_value!r}: expected test, book or doc") from None

    data = raw.get("data")
    if not isinstance(data, Mapping):
        raise ParseError("missing field 'data'")

    decoders: dict[DocumentType, Callable[[Mapping[str, Any]], Any]] = {
        DocumentType.TEST: _decode_test,
        DocumentType.BOOK: _decode_book,
        DocumentType.DOC: _decode_doc,
    }
    payload = decoders[doc_type](data)
    return DocumentRecord(id=doc_id, url=url, type=doc_type, data=payload)


def _decode_test(data: Mapping[str, Any]) -> TestData:
    _reject_unknown(data, _TEST_FIELDS, "data")
    college = data.get("college")
    return TestData(
        title=_require_str(data, "title", "data."),
        college=None if college is None else _str_tuple(college, "data.college"),
        course=_decode_course(_require_mapping(data, "course", "data."), "data.course"),
        time=_decode_time(_require_mapping(data, "time", "data.")),
        filetype=_require_str(data, "filetype", "data."),
        content=_str_tuple(_require(data, "content", "data."), "data.content"),
    )


def _decode_book(data: Mapping[str, Any]) -> BookData:
    _reject_unknown(data, _BOOK_FIELDS, "data")
    translators = data.get("translators")
    return BookData(
        title=_require_str(data, "title", "data."),
        authors=_str_tuple(_require(data, "authors", "data."), "data.authors"),
        translators=() if translators is None else _str_tuple(translators, "data.translators"),
        edition=_optional_str(data, "edition", "data."),
        publisher=_optional_str(data, "publisher", "data."),
        publish_year=_optional_str(data, "publish_year", "data."),
        isbn=_str_tuple(_require(data, "isbn", "data."), "data.isbn"),
        filetype=_require_str(data, "filetype", "data."),
    )


def _decode_doc(data: Mapping[str, Any]) -> DocData:
    _reject_unknown(data, _DOC_FIELDS, "data")
    courses = _require(data, "course", "data.")
    if not isinstance(courses, list):
        raise ParseError("field 'data.course' must be a list")
    return DocData(
        title=_require_str(data, "title", "data."),
        filetype=_require_str(data, "filetype", "data."),
        course=tuple(
            _decode_course(_as_mapping(item, f"data.course[{index}]"), f"data.course[{index}]")
            for index, item in enumerate(courses)
        ),
        content=_str_tuple(_require(data, "content", "data."), "data.content"),
    )


def _decode_course(data: Mapping[str, Any], where: str) -> Course:
    _reject_unknown(data, _COURSE_FIELDS, where)
    return Course(
        type=_optional_str(data, "type", f"{where}."),
        name=_optional_str(data, "name", f"{where}."),
    )


def _decode_time(data: Mapping[str, Any]) -> TimeRange:
    _reject_unknown(data, _TIME_FIELDS, "data.time")
    return TimeRange(
        start=_require_str(data, "start", "data.time."),
        end=_require_str(data, "end", "data.time."),
        semester=_optional_str(data, "semester", "data.time."),
        stage=_optional_str(data, "stage", "data.time."),
    )


def _require(data: Mapping[str, Any], key: str, prefix: str) -> Any:
    if data.get(key) is None:
        raise ParseError(f"missing field '{prefix}{key}'")
    return data[key]


def _require_str(data: Mapping[str, Any], key: str, prefix: str) -> str:
    value = _scalar_to_str(_require(data, key, prefix))
    if value is None:
        raise ParseError(f"field '{prefix}{key}' must be a string")
    return value


def _optional_str(data: Mapping[str, Any], key: str, prefix: str) -> str | None:
    if data.get(key) is None:
        return None
    return _require_str(data, key, prefix)


def _require_mapping(data: Mapping[str, Any], key: str, prefix: str) -> Mapping[str, Any]:
    return _as_mapping(_require(data, key, prefix), f"{prefix}{key}")


def _as_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ParseError(f"field '{where}' must be a mapping")
    return value


def _str_tuple(value: Any, where: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ParseError(f"field '{where}' must be a list")
    items = []
    for item in value:
        text = _scalar_to_str(item)
        if text is None:
            raise ParseError(f"field '{where}' must contain only strings")
        items.append(text)
    return tuple(items)


def _scalar_to_str(value: Any) -> str | None:
    # YAML turns unquoted years and ISBNs into ints; keep their text.
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _reject_unknown(data: Mapping[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ParseError(f"unknown field(s) in '{where}': {', '.join(unknown)}")


# ---------------------------------------------------------------------------
# Validation rules
# ---------------------------------------------------------------------------


def validate_record(
    record: DocumentRecord,
    registry: ISBNRegistry,
    *,
    commit: bool = True,
) -> list[ValidationError]:
    """Evaluate every rule for ``record`` and return all violations.

    Book ISBNs are registered in ``registry`` only when the book has no other
    violation and ``commit`` is true.
    """
    data = record.data
    if isinstance(data, TestData):
        return _validate_test(data)
    if isinstance(data, BookData):
        return _validate_book(data, record.id, registry, commit=commit)
    return _validate_doc(data)


def _validate_test(test: TestData) -> list[ValidationError]:
    errors: list[ValidationError] = []
    errors.extend(_check_course_type(test.course.type))
    if test.time.stage is not None and test.time.stage not in TEST_STAGES:
        errors.append(ValidationError(f"invalid stage {test.time.stage!r}: must be midterm or final"))
    if test.time.semester is not None and test.time.semester not in SEMESTERS:
        errors.append(
            ValidationError(f"invalid semester {test.time.semester!r}: must be first or second")
        )
    errors.extend(_check_content(test.content, TEST_CONTENT, "original-question or answer"))
    if test.college is not None and any(not college for college in test.college):
        errors.append(ValidationError("college must not contain empty strings"))
    errors.extend(_check_time_range(test.time))
    errors.extend(_check_filetype(test.filetype, TEST_FILETYPES))
    return errors


def _validate_book(
    book: BookData, owner: str, registry: ISBNRegistry, *, commit: bool = True
) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not book.authors:
        errors.append(ValidationError("book must have at least one author"))
    if book.publish_year is not None and not _YEAR_PATTERN.match(book.publish_year):
        errors.append(
            ValidationError(f"invalid publish_year {book.publish_year!r}: must be 4 digits")
        )
    valid_isbns = []
    for isbn in book.isbn:
        if is_valid_isbn13(isbn):
            valid_isbns.append(isbn)
        else:
            errors.append(ValidationError(f"invalid ISBN-13 {isbn!r}: bad format or checksum"))
    errors.extend(_check_filetype(book.filetype, BOOK_FILETYPES))

    conflicts = registry.claim(valid_isbns, owner, commit=commit and not errors)
    for isbn, existing in conflicts.items():
        errors.append(ValidationError(f"duplicate ISBN {isbn}: already used by {existing}"))
    return errors


def _validate_doc(doc: DocData) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not doc.course:
        errors.append(ValidationError("course must not be empty"))
    for course in doc.course:
        errors.extend(_check_course_type(course.type))
    errors.extend(
        _check_content(
            doc.content,
            DOC_CONTENT,
            "mind-map, question-bank, answer, key-points or slides",
        )
    )
    errors.extend(_check_filetype(doc.filetype, DOC_FILETYPES))
    return errors


def _check_course_type(course_type: str | None) -> list[ValidationError]:
    if course_type is None or course_type in COURSE_TYPES:
        return []
    return [
        ValidationError(f"invalid course type {course_type!r}: must be undergraduate or graduate")
    ]


def _check_content(
    content: tuple[str, ...], allowed: tuple[str, ...], expected: str
) -> list[ValidationError]:
    if not content:
        return [ValidationError("content must not be empty")]
    return [
        ValidationError(f"invalid content {tag!r}: must be {expected}")
        for tag in content
        if tag not in allowed
    ]


def _check_time_range(time_range: TimeRange) -> list[ValidationError]:
    start, end = time_range.start.strip(), time_range.end.strip()
    if not (_INT_PATTERN.match(start) and _INT_PATTERN.match(end)):
        return [ValidationError(f"malformed time range {start!r}-{end!r}: years must be integers")]
    if int(end) - int(start) not in (0, 1):
        return [ValidationError(f"invalid time range {start}-{end}: end must equal start or start + 1")]
    return []


def _check_filetype(filetype: str, allowed: tuple[str, ...]) -> list[ValidationError]:
    if filetype in allowed:
        return []
    return [ValidationError(f"invalid filetype {filetype!r}: must be {' or '.join(allowed)}")]


# ---------------------------------------------------------------------------
# Consistency with the file name and the object store
# ---------------------------------------------------------------------------


def url_pattern(domain: str) -> re.Pattern[str]:
    return re.compile(rf"^https://{re.escape(domain)}/files/[a-fA-F0-9]{{32}}\.(pdf|zip)$")


def check_consistency(
    record: DocumentRecord,
    filename: str,
    *,
    domain: str = DEFAULT_FILES_DOMAIN,
    inventory_keys: Collection[str] | None = None,
) -> list[ConsistencyError]:
    """Check id, url, file name and (when given) inventory agree with each other."""
    errors: list[ConsistencyError] = []
    if not _ID_PATTERN.match(record.id):
        errors.append(ConsistencyError(f"id {record.id!r} is not a 32-character hex digest"))
    if not url_pattern(domain).match(record.url):
        errors.append(
            ConsistencyError(
                f"url {record.url!r} must look like https://{domain}/files/<md5>.(pdf|zip)"
            )
        )
    elif record.id not in record.url:
        errors.append(ConsistencyError(f"url {record.url!r} does not contain id {record.id}"))
    if filename != f"{record.id}{METADATA_SUFFIX}":
        errors.append(ConsistencyError(f"file name must be {record.id}{METADATA_SUFFIX}"))
    if inventory_keys is not None and record.object_key not in inventory_keys:
        errors.append(ConsistencyError(f"object {record.object_key} not found in storage"))
    return errors


# ---------------------------------------------------------------------------
# Directory pass
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ValidationReport:
    """Outcome of validating one metadata directory."""

    total: int = 0
    records: list[DocumentRecord] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def counts(self) -> Counter[DocumentType]:
        return Counter(record.type for record in self.records)

    @property
    def ids(self) -> set[str]:
        return {record.id for record in self.records}

    def summary_line(self) -> str:
        counts = self.counts
        return (
            f"Total: {self.total}, Success: {len(self.records)}, "
            f"Book: {counts[DocumentType.BOOK]}, Test: {counts[DocumentType.TEST]}, "
            f"Doc: {counts[DocumentType.DOC]}"
        )


def list_metadata_files(directory: str | Path) -> list[Path]:
    """Metadata files of ``directory`` in the order they are validated."""
    directory = Path(directory)
    paths = []
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.suffix == METADATA_SUFFIX:
            paths.append(path)
        elif path.name.endswith(".json"):
            continue
        else:
            LOGGER.warning("Ignoring non-metadata entry: %s", path.name)
    return paths


def validate_directory(
    directory: str | Path,
    *,
    registry: ISBNRegistry | None = None,
    domain: str = DEFAULT_FILES_DOMAIN,
    inventory_keys: Collection[str] | None = None,
    content_check: Callable[[DocumentRecord], None] | None = None,
) -> ValidationReport:
    """Parse, validate and cross-check every metadata file of ``directory``.

    ``content_check`` runs last on records that passed every other check and
    raises a PipelineError to reject the record.
    """
    registry = registry if registry is not None else ISBNRegistry()
    paths = list_metadata_files(directory)

    def check(path: Path) -> DocumentRecord:
        record = parse_metadata_file(path)
        mismatches = check_consistency(
            record, path.name, domain=domain, inventory_keys=inventory_keys
        )
        problems: list[PipelineError] = []
        problems.extend(validate_record(record, registry, commit=not mismatches))
        problems.extend(mismatches)
        if not problems and content_check is not None:
            try:
                content_check(record)
            except PipelineError as exc:
                problems.append(exc)
        if problems:
            raise RecordRejected(path.name, problems)
        return record

    outcome = run_each("validate", paths, check, label=lambda path: path.name)
    report = ValidationReport(
        total=len(paths), records=list(outcome.results), failures=outcome.failures
    )
    LOGGER.info(report.summary_line())
    return report

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from errors import ConsistencyError, ParseError
from isbn import ISBNRegistry
from metadata import (
    check_consistency,
    list_metadata_files,
    parse_document,
    parse_metadata_file,
    validate_directory,
    validate_record,
)
from models import BookData, DocData, DocumentType, TestData

BOOK_ID = "a" * 32
DUPLICATE_BOOK_ID = "b" * 32
TEST_ID = "c" * 32
DOC_ID = "d" * 32
ISBN = "9787111407720"


def book_doc(doc_id: str = BOOK_ID, **overrides: Any) -> dict[str, Any]:
    data = {
        "title": "Computer Architecture",
        "authors": ["John Hennessy", "David Patterson"],
        "translators": ["Translator"],
        "edition": "5",
        "publisher": "China Machine Press",
        "publish_year": 2012,
        "isbn": [ISBN],
        "filetype": "pdf",
    }
    data.update(overrides)
    return {"id": doc_id, "url": f"https://byrdocs.org/files/{doc_id}.pdf", "type": "book", "data": data}


def exam_doc(doc_id: str = TEST_ID, **time_overrides: Any) -> dict[str, Any]:
    time = {"start": "2021", "end": "2022", "semester": "first", "stage": "final"}
    time.update(time_overrides)
    return {
        "id": doc_id,
        "url": f"https://byrdocs.org/files/{doc_id}.pdf",
        "type": "test",
        "data": {
            "title": "2021-2022 Calculus Final",
            "college": ["School of Science"],
            "course": {"type": "undergraduate", "name": "Calculus"},
            "time": time,
            "filetype": "pdf",
            "content": ["original-question", "answer"],
        },
    }


def doc_doc(doc_id: str = DOC_ID, **overrides: Any) -> dict[str, Any]:
    data = {
        "title": "Linear Algebra Notes",
        "filetype": "zip",
        "course": [{"type": "graduate", "name": "Linear Algebra"}],
        "content": ["key-points", "slides"],
    }
    data.update(overrides)
    return {"id": doc_id, "url": f"https://byrdocs.org/files/{doc_id}.zip", "type": "doc", "data": data}


def write_metadata(directory: Path, doc: dict[str, Any], name: str | None = None) -> Path:
    path = directory / (name or f"{doc['id']}.yml")
    path.write_text(yaml.safe_dump(doc, allow_unicode=True), encoding="utf-8")
    return path


def messages(errors: list[Exception]) -> list[str]:
    return [str(error) for error in errors]


def test_parse_document_decodes_book_and_keeps_year_text() -> None:
    record = parse_document(book_doc())

    assert record.type is DocumentType.BOOK
    assert isinstance(record.data, BookData)
    assert record.data.publish_year == "2012"
    assert record.data.isbn == (ISBN,)
    assert record.object_key == f"{BOOK_ID}.pdf"


def test_parse_document_decodes_test_and_doc() -> None:
    test = parse_document(exam_doc())
    doc = parse_document(doc_doc())

    assert isinstance(test.data, TestData)
    assert test.data.course.name == "Calculus"
    assert test.data.time.stage == "final"
    assert isinstance(doc.data, DocData)
    assert doc.data.course[0].type == "graduate"


def test_parse_document_translators_default_to_empty() -> None:
    raw = book_doc()
    del raw["data"]["translators"]

    assert parse_document(raw).data.translators == ()


@pytest.mark.parametrize(
    ("mutate", "fragment"),
    [
        (lambda raw: raw.update(type="magazine"), "unknown type"),
        (lambda raw: raw.pop("data"), "missing field 'data'"),
        (lambda raw: raw["data"].pop("title"), "data.title"),
        (lambda raw: raw["data"].update(pages=300), "unknown field"),
        (lambda raw: raw["data"].update(authors="single author"), "must be a list"),
    ],
)
def test_parse_document_rejects_malformed_input(mutate: Any, fragment: str) -> None:
    raw = book_doc()
    mutate(raw)

    with pytest.raises(ParseError, match=fragment):
        parse_document(raw)


def test_parse_metadata_file_reports_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / f"{BOOK_ID}.yml"
    path.write_text("id: [unclosed\n", encoding="utf-8")

    with pytest.raises(ParseError, match="invalid YAML"):
        parse_metadata_file(path)


@pytest.mark.parametrize(
    ("start", "end", "fragment"),
    [
        ("2021", "2021", None),
        ("2021", "2022", None),
        ("2021", "2023", "invalid time range 2021-2023"),
        ("2022", "2021", "invalid time range 2022-2021"),
        ("2021", "abc", "malformed time range"),
    ],
)
def test_time_range_rule(start: str, end: str, fragment: str | None) -> None:
    record = parse_document(exam_doc(start=start, end=end))

    errors = messages(validate_record(record, ISBNRegistry()))

    if fragment is None:
        assert errors == []
    else:
        assert len(errors) == 1
        assert fragment in errors[0]


def test_test_record_reports_every_violation_together() -> None:
    raw = exam_doc(stage="quiz", semester="third")
    raw["data"]["content"] = []
    raw["data"]["course"]["type"] = "postdoc"
    raw["data"]["filetype"] = "docx"

    errors = messages(validate_record(parse_document(raw), ISBNRegistry()))

    assert len(errors) == 5
    assert any("invalid stage 'quiz'" in error for error in errors)
    assert any("invalid semester 'third'" in error for error in errors)
    assert any("content must not be empty" in error for error in errors)
    assert any("invalid course type 'postdoc'" in error for error in errors)
    assert any("invalid filetype 'docx'" in error for error in errors)


def test_legacy_labels_are_accepted() -> None:
    raw = exam_doc(stage="期末", semester="Second")
    raw["data"]["course"]["type"] = "本科"
    raw["data"]["content"] = ["原题", "答案"]

    assert validate_record(parse_document(raw), ISBNRegistry()) == []


def test_college_must_not_contain_empty_strings() -> None:
    raw = exam_doc()
    raw["data"]["college"] = ["School of Science", ""]

    errors = messages(validate_record(parse_document(raw), ISBNRegistry()))

    assert errors == ["college must not contain empty strings"]


def test_book_rules() -> None:
    raw = book_doc(authors=[], publish_year="12", isbn=["9787111407721"], filetype="zip")

    errors = messages(validate_record(parse_document(raw), ISBNRegistry()))

    assert len(errors) == 4
    assert "book must have at least one author" in errors
    assert any("invalid publish_year '12'" in error for error in errors)
    assert any("invalid ISBN-13 '9787111407721'" in error for error in errors)
    assert any("invalid filetype 'zip'" in error for error in errors)


def test_duplicate_isbn_across_books() -> None:
    registry = ISBNRegistry()
    first = parse_document(book_doc(BOOK_ID))
    second = parse_document(book_doc(DUPLICATE_BOOK_ID, isbn=["978-7-111-40772-0"]))

    assert validate_record(first, registry) == []
    errors = messages(validate_record(second, registry))

    assert errors == [f"duplicate ISBN {ISBN}: already used by {BOOK_ID}"]
    assert registry.owner(ISBN) == BOOK_ID


def test_invalid_book_does_not_claim_its_isbns() -> None:
    registry = ISBNRegistry()
    invalid = parse_document(book_doc(BOOK_ID, authors=[]))

    assert validate_record(invalid, registry)
    assert ISBN not in registry


def test_doc_rules() -> None:
    raw = doc_doc(course=[], content=["poster"])

    errors = messages(validate_record(parse_document(raw), ISBNRegistry()))

    assert "course must not be empty" in errors
    assert any("invalid content 'poster'" in error for error in errors)


def test_check_consistency_accepts_matching_record() -> None:
    record = parse_document(book_doc())

    assert check_consistency(record, f"{BOOK_ID}.yml", inventory_keys={f"{BOOK_ID}.pdf"}) == []


def test_check_consistency_reports_mismatches() -> None:
    raw = book_doc()
    raw["url"] = f"https://byrdocs.org/files/{DOC_ID}.pdf"
    record = parse_document(raw)

    errors = check_consistency(record, "renamed.yml", inventory_keys=set())

    assert all(isinstance(error, ConsistencyError) for error in errors)
    texts = messages(errors)
    assert any("does not contain id" in text for text in texts)
    assert any("file name must be" in text for text in texts)
    assert any("not found in storage" in text for text in texts)


@pytest.mark.parametrize(
    "url",
    [
        f"http://byrdocs.org/files/{BOOK_ID}.pdf",
        f"https://example.org/files/{BOOK_ID}.pdf",
        f"https://byrdocs.org/files/{BOOK_ID}.docx",
        f"https://byrdocs.org/files/{BOOK_ID}.pdf?download=1",
    ],
)
def test_check_consistency_rejects_bad_urls(url: str) -> None:
    raw = book_doc()
    raw["url"] = url

    errors = messages(check_consistency(parse_document(raw), f"{BOOK_ID}.yml"))

    assert len(errors) == 1
    assert "must look like https://byrdocs.org/files/" in errors[0]


def test_check_consistency_respects_domain() -> None:
    raw = book_doc()
    raw["url"] = f"https://docs.example.edu/files/{BOOK_ID}.pdf"

    assert check_consistency(parse_document(raw), f"{BOOK_ID}.yml", domain="docs.example.edu") == []


def test_check_consistency_rejects_non_hex_id() -> None:
    bad_id = "z" * 32
    raw = book_doc(bad_id)

    errors = messages(check_consistency(parse_document(raw), f"{bad_id}.yml"))

    assert any("not a 32-character hex digest" in error for error in errors)


def test_list_metadata_files_sorts_and_skips_other_entries(tmp_path: Path) -> None:
    write_metadata(tmp_path, exam_doc())
    write_metadata(tmp_path, book_doc())
    (tmp_path / "metadata2.json").write_text("[]", encoding="utf-8")
    (tmp_path / "README.md").write_text("notes", encoding="utf-8")
    (tmp_path / "nested").mkdir()

    names = [path.name for path in list_metadata_files(tmp_path)]

    assert names == [f"{BOOK_ID}.yml", f"{TEST_ID}.yml"]


def test_validate_directory_collects_all_failures(tmp_path: Path) -> None:
    write_metadata(tmp_path, book_doc(BOOK_ID))
    write_metadata(tmp_path, book_doc(DUPLICATE_BOOK_ID))
    write_metadata(tmp_path, exam_doc(TEST_ID, stage="quiz"))

    report = validate_directory(tmp_path)

    assert report.total == 3
    assert [record.id for record in report.records] == [BOOK_ID]
    assert len(report.failures) == 2
    failures = {failure.item: str(failure.error) for failure in report.failures}
    assert "duplicate ISBN" in failures[f"{DUPLICATE_BOOK_ID}.yml"]
    assert "invalid stage" in failures[f"{TEST_ID}.yml"]
    assert report.summary_line() == "Total: 3, Success: 1, Book: 1, Test: 0, Doc: 0"


def test_validate_directory_counts_parse_failures(tmp_path: Path) -> None:
    write_metadata(tmp_path, doc_doc())
    (tmp_path / f"{TEST_ID}.yml").write_text("- not\n- a mapping\n", encoding="utf-8")

    report = validate_directory(tmp_path)

    assert report.total == 2
    assert report.ids == {DOC_ID}
    assert not report.ok
    assert "metadata must be a mapping" in str(report.failures[0].error)


def test_validate_directory_checks_inventory(tmp_path: Path) -> None:
    write_metadata(tmp_path, book_doc())
    write_metadata(tmp_path, doc_doc())

    report = validate_directory(tmp_path, inventory_keys={f"{BOOK_ID}.pdf"})

    assert report.ids == {BOOK_ID}
    assert "not found in storage" in str(report.failures[0].error)


def test_validate_directory_runs_content_check_on_clean_records_only(tmp_path: Path) -> None:
    write_metadata(tmp_path, book_doc())
    write_metadata(tmp_path, exam_doc(stage="quiz"))
    checked: list[str] = []

    def content_check(record: Any) -> None:
        checked.append(record.id)
        raise ConsistencyError("stored object hashes to something else")

    report = validate_directory(tmp_path, content_check=content_check)

    assert checked == [BOOK_ID]
    assert report.records == []
    assert "hashes to something else" in str(report.failures[0].error)


def test_validate_record_without_commit_leaves_registry_empty() -> None:
    registry = ISBNRegistry()

    assert validate_record(parse_document(book_doc()), registry, commit=False) == []
    assert ISBN not in registry


def test_misnamed_book_does_not_block_its_isbn(tmp_path: Path) -> None:
    write_metadata(tmp_path, book_doc(BOOK_ID), name="0-misnamed.yml")
    write_metadata(tmp_path, book_doc(DUPLICATE_BOOK_ID))

    report = validate_directory(tmp_path)

    assert report.ids == {DUPLICATE_BOOK_ID}
    assert [failure.item for failure in report.failures] == ["0-misnamed.yml"]
    assert "file name must be" in str(report.failures[0].error)

"""Shared typed models for the metadata pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DocumentType(str, Enum):
    """Discriminator of the ``type`` field in a metadata file."""

    TEST = "test"
    BOOK = "book"
    DOC = "doc"


class FileStatus(str, Enum):
    """Lifecycle status of an upload tracked by the backend."""

    PUBLISHED = "Published"
    PENDING = "Pending"
    TIMEOUT = "Timeout"
    EXPIRED = "Expired"
    ERROR = "Error"
    UPLOADED = "Uploaded"


@dataclass(frozen=True, slots=True)
class Course:
    type: str | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class TimeRange:
    start: str
    end: str
    semester: str | None = None
    stage: str | None = None


@dataclass(frozen=True, slots=True)
class TestData:
    """Payload of an exam paper."""

    __test__ = False  # keep pytest from collecting this as a test class

    title: str
    course: Course
    time: TimeRange
    filetype: str
    content: tuple[str, ...]
    college: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class BookData:
    """Payload of a book; ``isbn`` holds the strings as submitted."""

    title: str
    authors: tuple[str, ...]
    isbn: tuple[str, ...]
    filetype: str
    translators: tuple[str, ...] = ()
    edition: str | None = None
    publisher: str | None = None
    publish_year: str | None = None


@dataclass(frozen=True, slots=True)
class DocData:
    """Payload of course material (slides, notes, question banks)."""

    title: str
    filetype: str
    course: tuple[Course, ...]
    content: tuple[str, ...]


Payload = TestData | BookData | DocData


@dataclass(frozen=True, slots=True)
class DocumentRecord:
    """One parsed metadata file.

    ``id`` is the MD5 of the raw document and doubles as its primary key.
    ``filesize`` stays ``None`` until the catalog merge attaches it.
    """

    id: str
    url: str
    type: DocumentType
    data: Payload
    filesize: int | None = None

    @property
    def object_key(self) -> str:
        """Key of the raw document in the primary store, taken from ``url``."""
        return self.url.rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class ObjectRecord:
    """One object listed from the primary store."""

    key: str
    size: int = 0

    @property
    def stem(self) -> str:
        return self.key.rsplit(".", 1)[0]

    @property
    def extension(self) -> str:
        return self.key.rsplit(".", 1)[-1].lower() if "." in self.key else ""


@dataclass(frozen=True, slots=True)
class PendingFile:
    """A backend-tracked upload that has not been published yet."""

    id: int
    file_name: str
    status: FileStatus
    uploader: str = ""
    created_at: str | None = None
    file_size: int | None = None
    upload_time: str | None = None
    error_message: str | None = None

    @property
    def document_id(self) -> str:
        return self.file_name[:32]

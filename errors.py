"""Failure taxonomy shared by every pipeline stage."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all domain failures raised by the pipeline."""


class ParseError(PipelineError):
    """Metadata (or a backend response) is unreadable, malformed or missing fields."""


class ValidationError(PipelineError):
    """A single schema or semantic rule was violated."""


class ConsistencyError(PipelineError):
    """Filename, url, id and stored object do not agree."""


class NetworkError(PipelineError):
    """Object store, backend or render service could not be reached or refused a request."""


class IntegrityError(PipelineError):
    """Downloaded content does not hash to the id it was stored under."""


class RecordRejected(PipelineError):
    """Every problem found in one metadata file, reported together."""

    def __init__(self, item: str, problems: list[PipelineError]) -> None:
        self.item = item
        self.problems = list(problems)
        super().__init__("; ".join(str(problem) for problem in self.problems))


class StageError(PipelineError):
    """A stage finished with at least one failed item."""

    def __init__(self, stage: str, failures: list) -> None:
        self.stage = stage
        self.failures = list(failures)
        super().__init__(f"{stage}: {len(self.failures)} item(s) failed")

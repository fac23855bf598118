"""Fail-at-end batch helpers shared by validation, rendering and upload."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from errors import StageError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class ItemFailure:
    item: str
    error: Exception

    def __str__(self) -> str:
        return f"{self.item}: {self.error}"


@dataclass(slots=True)
class StageOutcome:
    """Per-item results of one stage.

    ``skipped`` holds items whose failure the stage tolerates (logged, not
    counted); only ``failures`` make the stage fail.
    """

    stage: str
    results: list[Any] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    skipped: list[ItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def attempted(self) -> int:
        return len(self.results) + len(self.failures) + len(self.skipped)

    def raise_for_failures(self) -> None:
        if self.failures:
            raise StageError(self.stage, self.failures)


def run_each(
    stage: str,
    items: Iterable[T],
    handler: Callable[[T], R],
    *,
    label: Callable[[T], str] = str,
    skip_on: tuple[type[Exception], ...] = (),
) -> StageOutcome:
    """Apply ``handler`` to every item, collecting results and failures.

    A failing item never stops the loop. Exceptions whose type is in
    ``skip_on`` are recorded as skipped; any other exception is a failure.
    Handlers returning ``None`` contribute nothing to ``results``.
    """
    outcome = StageOutcome(stage=stage)
    for item in items:
        name = label(item)
        try:
            result = handler(item)
        except skip_on as exc:
            LOGGER.warning("%s: skipped %s: %s", stage, name, exc)
            outcome.skipped.append(ItemFailure(name, exc))
            continue
        except Exception as exc:  # one bad item must not end the batch
            LOGGER.error("%s: %s", name, exc)
            LOGGER.debug("%s: traceback for %s", stage, name, exc_info=True)
            outcome.failures.append(ItemFailure(name, exc))
            continue
        if result is not None:
            outcome.results.append(result)

    LOGGER.info(
        "%s complete: succeeded=%s skipped=%s failed=%s",
        stage,
        len(outcome.results),
        len(outcome.skipped),
        len(outcome.failures),
    )
    return outcome


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry: ``attempts`` total tries, ``backoff_seconds`` doubling between them."""

    attempts: int = 3
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    def call(
        self,
        func: Callable[[], R],
        *,
        retry_on: tuple[type[Exception], ...] = (Exception,),
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> R:
        """Run ``func`` until it succeeds or attempts run out; re-raise the last error."""
        delay_seconds = self.backoff_seconds
        for attempt in range(1, self.attempts + 1):
            try:
                return func()
            except retry_on as exc:
                if attempt >= self.attempts:
                    raise
                LOGGER.warning(
                    "%s failed on attempt %s/%s: %s",
                    description,
                    attempt,
                    self.attempts,
                    exc,
                )
                if delay_seconds:
                    sleep(delay_seconds)
                    delay_seconds *= 2
        raise AssertionError("unreachable")

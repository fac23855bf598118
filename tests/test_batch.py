from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from batch import RetryPolicy, run_each
from errors import NetworkError, StageError


def test_run_each_keeps_going_after_a_failure() -> None:
    def handler(value: int) -> int:
        if value == 2:
            raise ValueError("two is bad")
        return value * 10

    outcome = run_each("double", [1, 2, 3], handler)

    assert outcome.results == [10, 30]
    assert [failure.item for failure in outcome.failures] == ["2"]
    assert str(outcome.failures[0]) == "2: two is bad"
    assert outcome.attempted == 3
    assert not outcome.ok


def test_run_each_records_tolerated_errors_as_skipped() -> None:
    def handler(name: str) -> None:
        if name == "offline":
            raise NetworkError("unreachable")

    outcome = run_each("download", ["offline", "fine"], handler, skip_on=(NetworkError,))

    assert outcome.ok
    assert outcome.results == []
    assert [skip.item for skip in outcome.skipped] == ["offline"]


def test_raise_for_failures_reports_stage_and_count() -> None:
    outcome = run_each("render", ["a", "b"], lambda name: 1 / 0, label=str.upper)

    with pytest.raises(StageError, match="render: 2 item") as excinfo:
        outcome.raise_for_failures()
    assert [failure.item for failure in excinfo.value.failures] == ["A", "B"]


def test_retry_policy_succeeds_on_third_attempt() -> None:
    func = MagicMock(side_effect=[OSError("one"), OSError("two"), "done"])
    sleep = MagicMock()

    result = RetryPolicy(attempts=3, backoff_seconds=0.5).call(func, retry_on=(OSError,), sleep=sleep)

    assert result == "done"
    assert func.call_count == 3
    assert [call.args[0] for call in sleep.call_args_list] == [0.5, 1.0]


def test_retry_policy_reraises_last_error() -> None:
    func = MagicMock(side_effect=[OSError("one"), OSError("two")])

    with pytest.raises(OSError, match="two"):
        RetryPolicy(attempts=2).call(func, retry_on=(OSError,))
    assert func.call_count == 2


def test_retry_policy_does_not_retry_other_errors() -> None:
    func = MagicMock(side_effect=KeyError("nope"))

    with pytest.raises(KeyError):
        RetryPolicy(attempts=3).call(func, retry_on=(OSError,))
    assert func.call_count == 1


def test_retry_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)

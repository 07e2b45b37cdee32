"""Poll loop pacing and error handling."""

from __future__ import annotations

import pytest

from apps.worker.poll_loop import run_poll_loop
from contracts.errors import InfrastructureUnavailable


class _Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _steps(*results):
    pending = list(results)

    def step() -> int:
        result = pending.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    return step


def test_idle_iteration_sleeps_poll_interval_and_busy_one_does_not() -> None:
    sleeper = _Sleeper()
    total = run_poll_loop(_steps(3, 0, 2), 1.5, 30.0, max_iterations=3, sleep=sleeper)
    assert total == 5
    assert sleeper.calls == [1.5]


def test_infrastructure_outage_pauses_then_continues() -> None:
    sleeper = _Sleeper()
    step = _steps(InfrastructureUnavailable("connection refused"), 4)
    total = run_poll_loop(step, 1.0, 30.0, max_iterations=2, sleep=sleeper)
    assert total == 4
    assert sleeper.calls == [30.0]


def test_unexpected_errors_escape_the_loop() -> None:
    with pytest.raises(RuntimeError, match="bug"):
        run_poll_loop(_steps(RuntimeError("bug")), 1.0, 1.0, max_iterations=5, sleep=_Sleeper())


def test_zero_iterations_never_calls_step() -> None:
    def step() -> int:
        raise AssertionError("step must not run")

    assert run_poll_loop(step, 1.0, 1.0, max_iterations=0, sleep=_Sleeper()) == 0

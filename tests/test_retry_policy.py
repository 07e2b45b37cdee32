"""Unit tests for backoff computation and failure classification."""

from __future__ import annotations

import random

import pytest

from contracts.errors import (
    AttemptsExhausted,
    PermanentBusinessError,
    TransientIOError,
    UpstreamError,
)
from contracts.queue_types import FailureClass
from services.queue.retry_policy import JITTER_FRACTION, FixedDelayPolicy, RetryPolicy, classify_failure


class _FixedRandom(random.Random):
    """Random source returning a constant draw."""

    def __init__(self, value: float) -> None:
        super().__init__()
        self._value = value

    def random(self) -> float:
        return self._value


def test_base_delay_doubles_until_cap() -> None:
    policy = RetryPolicy(base_backoff_seconds=2.0, max_backoff_seconds=60.0)
    assert [policy.base_delay(n) for n in (1, 2, 3, 4, 5, 6, 7)] == [2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]


def test_base_delay_treats_attempts_below_one_as_first_attempt() -> None:
    policy = RetryPolicy(base_backoff_seconds=3.0, max_backoff_seconds=60.0)
    assert policy.base_delay(0) == 3.0
    assert policy.base_delay(-4) == 3.0


def test_base_delay_huge_attempts_returns_cap() -> None:
    policy = RetryPolicy(base_backoff_seconds=2.0, max_backoff_seconds=60.0)
    assert policy.base_delay(10_000) == 60.0


def test_backoff_applies_jitter_from_injected_rng() -> None:
    policy = RetryPolicy(base_backoff_seconds=2.0, max_backoff_seconds=60.0, rng=_FixedRandom(0.5))
    assert policy.backoff(3) == pytest.approx(8.0 * (1 + 0.5 * JITTER_FRACTION))


def test_backoff_without_jitter_draw_is_base_delay() -> None:
    policy = RetryPolicy(rng=_FixedRandom(0.0))
    assert policy.backoff(2) == policy.base_delay(2)


def test_decide_dead_when_attempts_reach_max_even_if_transient() -> None:
    policy = RetryPolicy(max_attempts=5)
    decision = policy.decide(5, FailureClass.TRANSIENT)
    assert decision.dead is True
    assert decision.reason == "attempts_exhausted"
    assert decision.delay_seconds is None


def test_decide_permanent_is_dead_on_first_attempt() -> None:
    decision = RetryPolicy(max_attempts=5).decide(1, FailureClass.PERMANENT)
    assert decision.dead is True
    assert decision.reason == "permanent"


def test_decide_transient_below_max_retries_with_backoff() -> None:
    policy = RetryPolicy(max_attempts=5, base_backoff_seconds=2.0, rng=_FixedRandom(0.0))
    decision = policy.decide(2, FailureClass.TRANSIENT)
    assert decision.dead is False
    assert decision.delay_seconds == 4.0


def test_policy_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_backoff_seconds=-1.0)


def test_fixed_delay_policy_never_dead_letters() -> None:
    policy = FixedDelayPolicy(delay_seconds=300.0)
    for attempts in (1, 10, 1_000):
        decision = policy.decide(attempts, FailureClass.PERMANENT)
        assert decision.dead is False
        assert decision.delay_seconds == 300.0


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (PermanentBusinessError("anything"), FailureClass.PERMANENT),
        (AttemptsExhausted("limit"), FailureClass.PERMANENT),
        (TransientIOError("order does not exist"), FailureClass.TRANSIENT),
        (UpstreamError("Não existe pedido com esse id"), FailureClass.PERMANENT),
        (UpstreamError("resource not found"), FailureClass.PERMANENT),
        (UpstreamError("bad request", error_code=404), FailureClass.PERMANENT),
        (UpstreamError("bad request", error_code="404"), FailureClass.PERMANENT),
        (RuntimeError("504 Gateway Timeout"), FailureClass.TRANSIENT),
        (RuntimeError("PGRST003 timed out acquiring connection"), FailureClass.TRANSIENT),
        (RuntimeError("read ETIMEDOUT"), FailureClass.TRANSIENT),
        (ValueError("something odd"), FailureClass.TRANSIENT),
    ],
)
def test_classify_failure(exc: BaseException, expected: FailureClass) -> None:
    assert classify_failure(exc) is expected

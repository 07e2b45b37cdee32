"""Retry policies and failure classification for the work queues."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from contracts.errors import AttemptsExhausted, PermanentBusinessError, TransientIOError
from contracts.queue_types import FailureClass, RetryDecision

JITTER_FRACTION = 0.15

_PERMANENT_MARKERS = (
    "does not exist",
    "not found",
    "não existe pedido",
    "nao existe pedido",
)
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "504",
    "502",
    "503",
    "pgrst003",
    "server busy",
    "gateway",
)
_NOT_FOUND_CODES = {"404"}


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter and a hard attempt ceiling.

    ``attempts`` is 1-based: the first failure of a row is evaluated with
    ``attempts=1`` (the inbox claim increments the counter before work starts).
    """

    max_attempts: int = 5
    base_backoff_seconds: float = 2.0
    max_backoff_seconds: float = 60.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff values must be >= 0")

    def base_delay(self, attempts: int) -> float:
        """Backoff without jitter: ``min(cap, base * 2**(attempts-1))``."""
        exponent = max(0, int(attempts) - 1)
        # 2**exponent overflows float conversion long before the cap matters.
        if exponent >= 64:
            return float(self.max_backoff_seconds)
        return float(min(self.max_backoff_seconds, self.base_backoff_seconds * (2**exponent)))

    def backoff(self, attempts: int) -> float:
        """Seconds to wait before the next try, jitter drawn from [0, 0.15)."""
        jitter = self.rng.random() * JITTER_FRACTION
        return self.base_delay(attempts) * (1.0 + jitter)

    def decide(self, attempts: int, classification: FailureClass) -> RetryDecision:
        if int(attempts) >= self.max_attempts:
            return RetryDecision(dead=True, reason="attempts_exhausted")
        if classification is FailureClass.PERMANENT:
            return RetryDecision(dead=True, reason="permanent")
        return RetryDecision(dead=False, delay_seconds=self.backoff(attempts), reason="transient")


@dataclass(frozen=True)
class FixedDelayPolicy:
    """Retry forever after a constant delay; never dead-letters."""

    delay_seconds: float = 300.0

    def decide(self, attempts: int, classification: FailureClass) -> RetryDecision:
        _ = (attempts, classification)
        return RetryDecision(dead=False, delay_seconds=float(self.delay_seconds), reason="fixed_delay")


def classify_failure(exc: BaseException) -> FailureClass:
    """Map an exception raised while processing a row to a failure class.

    Explicit error types win; otherwise the message and any upstream
    ``error_code`` are inspected. Unknown failures default to transient.
    """
    if isinstance(exc, (PermanentBusinessError, AttemptsExhausted)):
        return FailureClass.PERMANENT
    if isinstance(exc, TransientIOError):
        return FailureClass.TRANSIENT

    code = getattr(exc, "error_code", None)
    if code is not None and str(code).strip() in _NOT_FOUND_CODES:
        return FailureClass.PERMANENT

    message = str(exc).lower()
    if any(marker in message for marker in _PERMANENT_MARKERS):
        return FailureClass.PERMANENT
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return FailureClass.TRANSIENT
    return FailureClass.TRANSIENT

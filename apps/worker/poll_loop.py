"""Forever-loop driver shared by the pipeline workers."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from contracts.errors import InfrastructureUnavailable

logger = logging.getLogger(__name__)


def run_poll_loop(
    step: Callable[[], int],
    poll_interval: float,
    error_pause: float,
    max_iterations: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Call ``step`` until the process exits.

    ``step`` claims and processes one batch and returns how many rows it
    claimed. An empty batch sleeps ``poll_interval``; an unreachable database
    sleeps ``error_pause`` and the loop carries on. Any other exception
    escapes: per-row failures are already absorbed inside ``step``.

    ``max_iterations`` bounds the loop (tests, one-shot runs). Returns the
    total number of rows claimed.
    """
    total = 0
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        try:
            claimed = int(step())
        except InfrastructureUnavailable as exc:
            logger.error("poll_loop_infrastructure_unavailable error=%s pause_s=%s", exc, error_pause)
            sleep(float(error_pause))
            continue

        total += claimed
        if claimed == 0:
            sleep(float(poll_interval))
    return total

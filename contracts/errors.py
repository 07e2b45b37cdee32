"""Error taxonomy shared by the ingestion and normalization stages.

Per-row errors are converted into queue state transitions by the workers;
only ``InfrastructureUnavailable`` is allowed to abort a poll iteration.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline errors."""


class TransientIOError(PipelineError):
    """Timeout / gateway-busy style failure; retried with backoff."""


class PermanentBusinessError(PipelineError):
    """Upstream says the order does not exist; dead-lettered immediately."""


class MalformedPayloadError(PipelineError, ValueError):
    """Raw payload shape cannot be interpreted by the normalizer."""


class AttemptsExhausted(PipelineError):
    """Attempts reached the configured maximum; the row goes dead."""


class InfrastructureUnavailable(PipelineError):
    """The durable store itself is unreachable; aborts the loop iteration."""


class UpstreamError(PipelineError):
    """Error reported by an order source.

    ``error_code`` carries the provider's business error code when the
    response body contained one (for example ``404`` for unknown orders).
    """

    def __init__(self, message: str, *, error_code: int | str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


__all__ = [
    "AttemptsExhausted",
    "InfrastructureUnavailable",
    "MalformedPayloadError",
    "PermanentBusinessError",
    "PipelineError",
    "TransientIOError",
    "UpstreamError",
]

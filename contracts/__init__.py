"""Contracts shared by the pipeline stages.

The contracts package defines:
- the error taxonomy (`errors.py`)
- queue row and retry decision types (`queue_types.py`)
- the upstream order source protocol (`sources.py`)
"""

from contracts.errors import (
    AttemptsExhausted,
    InfrastructureUnavailable,
    MalformedPayloadError,
    PermanentBusinessError,
    PipelineError,
    TransientIOError,
    UpstreamError,
)
from contracts.queue_types import FailureClass, InboxEvent, RawSnapshot, RetryDecision
from contracts.sources import OrderSource

__all__ = [
    "AttemptsExhausted",
    "FailureClass",
    "InboxEvent",
    "InfrastructureUnavailable",
    "MalformedPayloadError",
    "OrderSource",
    "PermanentBusinessError",
    "PipelineError",
    "RawSnapshot",
    "RetryDecision",
    "TransientIOError",
    "UpstreamError",
]

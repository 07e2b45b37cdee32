"""Work-queue primitives shared by the ingestion and normalization stages.

This package contains:
- the claim/complete/fail protocol (`work_queue.py`)
- backoff and failure classification (`retry_policy.py`)
"""

from services.queue.retry_policy import FixedDelayPolicy, RetryPolicy, classify_failure
from services.queue.work_queue import INBOX_QUEUE, RAW_NORMALIZE_QUEUE, QueueTable, WorkQueue

__all__ = [
    "FixedDelayPolicy",
    "INBOX_QUEUE",
    "QueueTable",
    "RAW_NORMALIZE_QUEUE",
    "RetryPolicy",
    "WorkQueue",
    "classify_failure",
]

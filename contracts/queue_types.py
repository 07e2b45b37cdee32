"""Row and decision types used by the work queues."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class FailureClass(str, Enum):
    """Caller-supplied classification of a per-row failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry policy for one failure."""

    dead: bool
    delay_seconds: float | None = None
    reason: str = ""


@dataclass(frozen=True)
class InboxEvent:
    """Claimed ``events_inbox`` row."""

    id: int
    provider: str
    store_id: str
    order_id: str
    event: str
    status: str
    attempts: int
    received_at: datetime
    next_retry_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> InboxEvent:
        return cls(
            id=int(row["id"]),
            provider=str(row.get("provider") or ""),
            store_id=str(row.get("store_id") or ""),
            order_id=str(row.get("order_id") or ""),
            event=str(row.get("event") or ""),
            status=str(row.get("status") or ""),
            attempts=int(row.get("attempts") or 0),
            received_at=row["received_at"],
            next_retry_at=row.get("next_retry_at"),
        )


@dataclass(frozen=True)
class RawSnapshot:
    """Claimed ``orders_raw`` row handed to the normalizer."""

    id: int
    provider: str
    store_id: str
    order_id: str
    canceled: bool | None
    received_at: datetime
    payload: Any
    payload_hash: str
    attempts: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RawSnapshot:
        canceled = row.get("canceled")
        return cls(
            id=int(row["id"]),
            provider=str(row.get("provider") or ""),
            store_id=str(row.get("store_id") or ""),
            order_id=str(row.get("order_id") or ""),
            canceled=None if canceled is None else bool(canceled),
            received_at=row["received_at"],
            payload=row.get("payload"),
            payload_hash=str(row.get("payload_hash") or ""),
            attempts=int(row.get("attempts") or 0),
        )

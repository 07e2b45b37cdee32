"""Turn one claimed raw snapshot into normalized rows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from contracts.queue_types import RawSnapshot
from services.normalization.sale import build_sale
from services.normalization.writer import write_sale
from services.snapshots.raw_store import RawSnapshotStore


@dataclass(frozen=True)
class NormalizeResult:
    order_ref: int
    items: int
    finalized: bool


def normalize_snapshot(conn: Any, snapshot: RawSnapshot, store: RawSnapshotStore) -> NormalizeResult:
    """Write all normalized entities and mark the snapshot normalized.

    Runs inside the caller's transaction; the caller commits on success and
    rolls back on any exception.
    """
    sale = build_sale(snapshot)
    order_ref = write_sale(conn, sale, raw_id=snapshot.id)
    finalized = store.mark_normalized(conn, snapshot)
    return NormalizeResult(order_ref=order_ref, items=len(sale.items), finalized=finalized)

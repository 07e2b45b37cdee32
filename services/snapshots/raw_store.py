"""Content-addressed raw order snapshots (``orders_raw``).

One row per (provider, store_id, order_id). Every write refreshes the payload,
but normalization bookkeeping is reset only when the payload fingerprint
changes, so a redundant re-delivery never re-triggers normalization.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from apps.backend.db import execute_conn, fetch_one_dict_conn, to_jsonb
from contracts.queue_types import FailureClass, RawSnapshot
from services.queue.retry_policy import FixedDelayPolicy
from services.queue.work_queue import RAW_NORMALIZE_QUEUE, WorkQueue

logger = logging.getLogger(__name__)

_RESET_BOOKKEEPING_SQL = (
    "normalized = false, normalized_at = NULL, attempts = 0, last_error = NULL, "
    "next_retry_at = NULL, processing_started_at = NULL"
)


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class UpsertResult:
    id: int
    outcome: UpsertOutcome
    payload_hash: str


def _to_json_compatible(value: Any) -> Any:
    """Convert payload values into JSON primitives deterministically."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _to_json_compatible(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_compatible(v) for v in value]
    return str(value)


def canonical_json_dumps(payload: Any) -> str:
    """Sorted keys, no whitespace, UTF-8 preserved."""
    return json.dumps(
        _to_json_compatible(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def payload_fingerprint(payload: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``payload``.

    Key order and whitespace do not affect the result; any value change does.
    """
    return hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()


class RawSnapshotStore:
    """Upsert and claim access to ``orders_raw``."""

    def __init__(self, *, retry_delay_seconds: float = 300.0) -> None:
        self.queue = WorkQueue(
            RAW_NORMALIZE_QUEUE, policy=FixedDelayPolicy(delay_seconds=retry_delay_seconds)
        )

    def _select_for_update(
        self, conn: Any, provider: str, store_id: str, order_id: str
    ) -> dict[str, Any] | None:
        return fetch_one_dict_conn(
            conn,
            """
            SELECT id, payload_hash
            FROM orders_raw
            WHERE provider = %s
              AND store_id = %s
              AND order_id = %s
            FOR UPDATE
            """,
            (provider, store_id, order_id),
        )

    def upsert(
        self,
        conn: Any,
        *,
        provider: str,
        store_id: str,
        order_id: str,
        canceled: bool | None,
        received_at: datetime,
        payload: Any,
    ) -> UpsertResult:
        """Write one snapshot inside the caller's transaction."""
        payload_hash = payload_fingerprint(payload)
        payload_json = to_jsonb(payload)

        existing = self._select_for_update(conn, provider, store_id, order_id)
        if existing is None:
            inserted = fetch_one_dict_conn(
                conn,
                """
                INSERT INTO orders_raw
                  (provider, store_id, order_id, canceled, received_at, payload, payload_hash,
                   normalized, attempts)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, false, 0)
                ON CONFLICT (provider, store_id, order_id) DO NOTHING
                RETURNING id
                """,
                (provider, store_id, order_id, canceled, received_at, payload_json, payload_hash),
            )
            if inserted is not None:
                return UpsertResult(
                    id=int(inserted["id"]), outcome=UpsertOutcome.INSERTED, payload_hash=payload_hash
                )
            # A concurrent writer inserted first; its row is now visible.
            existing = self._select_for_update(conn, provider, store_id, order_id)
            if existing is None:
                raise RuntimeError(
                    f"orders_raw_upsert_failed: row vanished for {provider}/{store_id}/{order_id}"
                )

        changed = str(existing.get("payload_hash") or "") != payload_hash
        reset_sql = f", {_RESET_BOOKKEEPING_SQL}" if changed else ""
        execute_conn(
            conn,
            f"""
            UPDATE orders_raw
            SET canceled = %s,
                received_at = %s,
                payload = %s::jsonb,
                payload_hash = %s{reset_sql}
            WHERE id = %s
            """,
            (canceled, received_at, payload_json, payload_hash, int(existing["id"])),
        )
        return UpsertResult(
            id=int(existing["id"]),
            outcome=UpsertOutcome.CHANGED if changed else UpsertOutcome.UNCHANGED,
            payload_hash=payload_hash,
        )

    def pick_unnormalized(self, conn: Any, limit: int) -> list[RawSnapshot]:
        """Claim raw rows awaiting normalization, oldest first."""
        return [RawSnapshot.from_row(row) for row in self.queue.claim(conn, limit)]

    def mark_normalized(self, conn: Any, snapshot: RawSnapshot) -> bool:
        """Finalize a snapshot; skipped when its payload changed mid-flight."""
        done = self.queue.complete(conn, snapshot.id, expect={"payload_hash": snapshot.payload_hash})
        if not done:
            logger.info(
                "normalize_finalize_skipped raw_id=%s order_id=%s reason=payload_changed_or_released",
                snapshot.id,
                snapshot.order_id,
            )
        return done

    def mark_normalize_error(self, conn: Any, snapshot: RawSnapshot, message: str) -> None:
        self.queue.fail(
            conn,
            snapshot.id,
            message,
            attempts=snapshot.attempts + 1,
            classification=FailureClass.TRANSIENT,
        )

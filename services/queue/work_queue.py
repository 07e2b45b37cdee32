"""Durable claim / complete / fail protocol over a Postgres table.

Both pipeline stages use the same algorithm: a CTE picks eligible ids in
arrival order with ``FOR UPDATE SKIP LOCKED`` and a single ``UPDATE ...
RETURNING`` marks them as owned. Concurrent claimers therefore never receive
the same row, and no in-process locking is needed.

What differs between stages (eligibility, how "owned" is recorded, whether
a row can be dead-lettered) is data in a ``QueueTable``.

Callers own the transaction: every method runs on the given connection and
the caller commits.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from apps.backend.db import execute_conn, fetch_all_dict_conn
from contracts.queue_types import FailureClass, RetryDecision

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class RetryPolicyProtocol(Protocol):
    def decide(self, attempts: int, classification: FailureClass) -> RetryDecision: ...


@dataclass(frozen=True)
class QueueTable:
    """SQL fragments describing one queue-backed table.

    ``retry_set_sql`` takes two parameters (last_error, delay seconds);
    ``dead_set_sql`` takes one (last_error). A queue without ``dead_set_sql``
    cannot dead-letter.
    """

    name: str
    table: str
    columns: tuple[str, ...]
    eligible_sql: str
    claim_set_sql: str
    processing_sql: str
    done_set_sql: str
    retry_set_sql: str
    release_set_sql: str
    dead_set_sql: str | None = None
    order_by: str = "received_at ASC, id ASC"


INBOX_QUEUE = QueueTable(
    name="events_inbox",
    table="events_inbox",
    columns=(
        "id",
        "provider",
        "store_id",
        "order_id",
        "event",
        "status",
        "attempts",
        "received_at",
        "next_retry_at",
    ),
    eligible_sql="status IN ('pending', 'error')",
    claim_set_sql="status = 'processing', processing_started_at = now(), attempts = attempts + 1",
    processing_sql="status = 'processing'",
    done_set_sql=(
        "status = 'done', processing_started_at = NULL, last_error = NULL, next_retry_at = NULL"
    ),
    retry_set_sql=(
        "status = 'error', processing_started_at = NULL, last_error = %s, "
        "next_retry_at = now() + make_interval(secs => %s)"
    ),
    dead_set_sql="status = 'dead', processing_started_at = NULL, last_error = %s, next_retry_at = NULL",
    release_set_sql=(
        "status = 'error', processing_started_at = NULL, last_error = 'lease_expired', "
        "next_retry_at = now()"
    ),
)

RAW_NORMALIZE_QUEUE = QueueTable(
    name="orders_raw",
    table="orders_raw",
    columns=(
        "id",
        "provider",
        "store_id",
        "order_id",
        "canceled",
        "received_at",
        "payload",
        "payload_hash",
        "attempts",
    ),
    eligible_sql="normalized = false AND processing_started_at IS NULL",
    claim_set_sql="processing_started_at = now()",
    processing_sql="processing_started_at IS NOT NULL",
    done_set_sql=(
        "normalized = true, normalized_at = now(), processing_started_at = NULL, "
        "last_error = NULL, next_retry_at = NULL"
    ),
    retry_set_sql=(
        "attempts = attempts + 1, processing_started_at = NULL, last_error = %s, "
        "next_retry_at = now() + make_interval(secs => %s)"
    ),
    release_set_sql="processing_started_at = NULL",
)


def _truncate(message: str) -> str:
    text = str(message or "")
    if len(text) <= MAX_ERROR_LENGTH:
        return text
    return text[: MAX_ERROR_LENGTH - 3] + "..."


def _sort_key(row: Mapping[str, Any]) -> tuple[Any, int]:
    return (row.get("received_at"), int(row.get("id") or 0))


class WorkQueue:
    """Claim/complete/fail primitive for one ``QueueTable``."""

    def __init__(self, spec: QueueTable, *, policy: RetryPolicyProtocol) -> None:
        self.spec = spec
        self.policy = policy

    def claim_sql(self) -> str:
        spec = self.spec
        returning = ", ".join(f"q.{col}" for col in spec.columns)
        return f"""
        WITH candidates AS (
          SELECT id
          FROM {spec.table}
          WHERE {spec.eligible_sql}
            AND (next_retry_at IS NULL OR next_retry_at <= now())
          ORDER BY {spec.order_by}
          LIMIT %s
          FOR UPDATE SKIP LOCKED
        )
        UPDATE {spec.table} AS q
        SET {spec.claim_set_sql}
        FROM candidates c
        WHERE q.id = c.id
        RETURNING {returning}
        """

    def claim(self, conn: Any, batch_size: int) -> list[dict[str, Any]]:
        """Take exclusive ownership of up to ``batch_size`` eligible rows.

        Rows come back oldest arrival first; ``UPDATE ... RETURNING`` does not
        keep the CTE order so they are re-sorted here.
        """
        if int(batch_size) < 1:
            raise ValueError("batch_size must be >= 1")
        rows = fetch_all_dict_conn(conn, self.claim_sql(), (int(batch_size),))
        return sorted(rows, key=_sort_key)

    def complete(self, conn: Any, item_id: int, *, expect: Mapping[str, Any] | None = None) -> bool:
        """Mark a claimed row done. Returns False when the row is no longer ours.

        ``expect`` adds equality guards (column -> value) evaluated atomically
        with the update.
        """
        spec = self.spec
        guards = ""
        params: list[Any] = [int(item_id)]
        for column, value in (expect or {}).items():
            guards += f" AND {column} = %s"
            params.append(value)
        sql = f"""
        UPDATE {spec.table}
        SET {spec.done_set_sql}
        WHERE id = %s
          AND {spec.processing_sql}{guards}
        """
        return execute_conn(conn, sql, tuple(params)) == 1

    def fail(
        self,
        conn: Any,
        item_id: int,
        message: str,
        *,
        attempts: int,
        classification: FailureClass,
    ) -> RetryDecision:
        """Record a failure and schedule a retry or dead-letter the row."""
        spec = self.spec
        decision = self.policy.decide(int(attempts), classification)
        error_text = _truncate(message)

        if decision.dead:
            if spec.dead_set_sql is None:
                raise RuntimeError(f"queue {spec.name} cannot dead-letter rows")
            sql = f"""
            UPDATE {spec.table}
            SET {spec.dead_set_sql}
            WHERE id = %s
              AND {spec.processing_sql}
            """
            params: tuple[Any, ...] = (error_text, int(item_id))
        else:
            sql = f"""
            UPDATE {spec.table}
            SET {spec.retry_set_sql}
            WHERE id = %s
              AND {spec.processing_sql}
            """
            params = (error_text, float(decision.delay_seconds or 0.0), int(item_id))

        updated = execute_conn(conn, sql, params)
        if updated != 1:
            logger.warning(
                "queue_fail_skipped queue=%s id=%s reason=row_not_processing", spec.name, item_id
            )
        return decision

    def release_stale(self, conn: Any, *, older_than_seconds: float, limit: int) -> list[int]:
        """Release rows claimed longer than ``older_than_seconds`` ago."""
        if int(limit) < 1:
            raise ValueError("limit must be >= 1")
        spec = self.spec
        sql = f"""
        WITH stale AS (
          SELECT id
          FROM {spec.table}
          WHERE {spec.processing_sql}
            AND processing_started_at < now() - make_interval(secs => %s)
          ORDER BY processing_started_at ASC
          LIMIT %s
          FOR UPDATE SKIP LOCKED
        )
        UPDATE {spec.table} AS q
        SET {spec.release_set_sql}
        FROM stale s
        WHERE q.id = s.id
        RETURNING q.id
        """
        rows = fetch_all_dict_conn(conn, sql, (float(older_than_seconds), int(limit)))
        return sorted(int(r["id"]) for r in rows)

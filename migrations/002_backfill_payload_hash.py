"""
Backfill orders_raw.payload_hash for rows written before hashing existed.

Rows are processed in id order, in batches, using the same fingerprint the
ingestion worker computes, so the first re-delivery of an unchanged order
does not re-trigger normalization.
"""

from __future__ import annotations

from services.snapshots.raw_store import payload_fingerprint

BATCH_SIZE = 500


def _next_batch(cur, after_id: int) -> list[tuple[int, object]]:
    cur.execute(
        """
        SELECT id, payload
        FROM orders_raw
        WHERE payload_hash IS NULL
          AND id > %s
        ORDER BY id
        LIMIT %s
        """,
        (after_id, BATCH_SIZE),
    )
    return list(cur.fetchall() or [])


def upgrade(conn) -> None:
    """Compute payload_hash wherever it is NULL."""
    last_id = 0
    with conn.cursor() as cur:
        while True:
            rows = _next_batch(cur, last_id)
            if not rows:
                break
            cur.executemany(
                "UPDATE orders_raw SET payload_hash = %s WHERE id = %s",
                [(payload_fingerprint(payload), int(row_id)) for row_id, payload in rows],
            )
            last_id = int(rows[-1][0])

"""Drain ``orders_raw``: turn raw snapshots into normalized relational rows."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass

from apps.backend.db import db_conn, infrastructure_guard, is_connection_error
from apps.worker.poll_loop import run_poll_loop
from contracts.errors import MalformedPayloadError
from contracts.queue_types import RawSnapshot
from infra.config import get_settings
from infra.logging_config import clear_request_context, set_request_context, setup_logging
from services.normalization import normalize_snapshot
from services.queue import RAW_NORMALIZE_QUEUE
from services.snapshots import RawSnapshotStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizeBatchStats:
    claimed: int
    normalized: int
    skipped: int
    failed: int


class NormalizationWorker:
    """Claim unnormalized snapshots and write them, one transaction per row."""

    def __init__(self, *, store: RawSnapshotStore | None = None) -> None:
        self.store = store or RawSnapshotStore()

    def claim(self, batch_size: int) -> list[RawSnapshot]:
        with infrastructure_guard("normalize_claim"), db_conn() as conn:
            snapshots = self.store.pick_unnormalized(conn, batch_size)
            conn.commit()
        return snapshots

    def run_once(self, batch_size: int) -> NormalizeBatchStats:
        snapshots = self.claim(batch_size)
        if snapshots:
            logger.info("normalize_claimed count=%s", len(snapshots))
        normalized = skipped = failed = 0
        for snapshot in snapshots:
            outcome = self.process_snapshot(snapshot)
            if outcome == "normalized":
                normalized += 1
            elif outcome == "skipped":
                skipped += 1
            else:
                failed += 1
        return NormalizeBatchStats(
            claimed=len(snapshots), normalized=normalized, skipped=skipped, failed=failed
        )

    def process_snapshot(self, snapshot: RawSnapshot) -> str:
        """Normalize one snapshot; returns ``normalized``, ``skipped`` or ``failed``."""
        set_request_context(
            stage="normalize", queue=RAW_NORMALIZE_QUEUE.name, raw_id=snapshot.id, order_id=snapshot.order_id
        )
        try:
            with infrastructure_guard("normalize_row"), db_conn() as conn:
                try:
                    result = normalize_snapshot(conn, snapshot, self.store)
                    conn.commit()
                except Exception as exc:
                    if is_connection_error(exc):
                        raise
                    conn.rollback()
                    self.store.mark_normalize_error(conn, snapshot, str(exc))
                    conn.commit()
                    logger.warning(
                        "normalize_failed raw_id=%s order_id=%s attempts=%s malformed=%s error=%s",
                        snapshot.id,
                        snapshot.order_id,
                        snapshot.attempts + 1,
                        isinstance(exc, MalformedPayloadError),
                        str(exc)[:200],
                    )
                    return "failed"
        finally:
            clear_request_context()

        if not result.finalized:
            return "skipped"
        logger.info(
            "normalize_done raw_id=%s order_id=%s order_ref=%s items=%s",
            snapshot.id,
            snapshot.order_id,
            result.order_ref,
            result.items,
        )
        return "normalized"


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the normalization worker."""
    parser = argparse.ArgumentParser(description="Normalize raw order snapshots.")
    parser.add_argument("--batch-size", type=int, default=None, help="Snapshots per claim (default: config).")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    setup_logging()
    settings = get_settings(reload=True)

    worker = NormalizationWorker(
        store=RawSnapshotStore(retry_delay_seconds=settings.normalize.retry_delay_seconds)
    )
    batch_size = int(args.batch_size or settings.normalize.batch_size)

    logger.info("normalize_worker_started batch_size=%s", batch_size)
    run_poll_loop(
        lambda: worker.run_once(batch_size).claimed,
        poll_interval=settings.queue.poll_interval_seconds,
        error_pause=settings.queue.error_pause_seconds,
        max_iterations=1 if args.once else None,
    )


if __name__ == "__main__":
    main()

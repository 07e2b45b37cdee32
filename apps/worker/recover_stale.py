"""Release queue rows whose claimer died mid-flight.

A claimed row keeps its processing marker until the claimer completes or
fails it. When a worker process is killed the marker stays set forever;
this sweep hands such rows back to their queue. Run it on a schedule.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass

from apps.backend.db import db_conn, infrastructure_guard
from infra.config import get_settings
from infra.logging_config import setup_logging
from services.queue import INBOX_QUEUE, RAW_NORMALIZE_QUEUE, FixedDelayPolicy, QueueTable, WorkQueue

logger = logging.getLogger(__name__)

RECOVERABLE_QUEUES: tuple[QueueTable, ...] = (INBOX_QUEUE, RAW_NORMALIZE_QUEUE)


@dataclass(frozen=True)
class RecoveryStats:
    """Released row ids per queue name."""

    released: dict[str, list[int]]

    @property
    def total(self) -> int:
        return sum(len(ids) for ids in self.released.values())


def recover_stale_claims(
    *,
    older_than_seconds: float,
    limit: int,
    queues: tuple[QueueTable, ...] = RECOVERABLE_QUEUES,
) -> RecoveryStats:
    """Run one committed release sweep per queue."""
    released: dict[str, list[int]] = {}
    for spec in queues:
        # Release never consults the retry policy.
        queue = WorkQueue(spec, policy=FixedDelayPolicy())
        with infrastructure_guard(f"recover_{spec.name}"), db_conn() as conn:
            ids = queue.release_stale(conn, older_than_seconds=older_than_seconds, limit=limit)
            conn.commit()
        released[spec.name] = ids
        if ids:
            logger.warning(
                "stale_claims_released queue=%s count=%s ids=%s", spec.name, len(ids), ids[:20]
            )
    return RecoveryStats(released=released)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Release stale queue claims.")
    parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        help="Seconds a claim may stay in flight (default: RECOVERY__STALE_AFTER_SECONDS).",
    )
    parser.add_argument("--limit", type=int, default=None, help="Max rows per queue (default: config).")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    setup_logging()
    cfg = get_settings(reload=True).recovery

    older_than = cfg.stale_after_seconds if args.older_than is None else float(args.older_than)
    if older_than < 0:
        raise SystemExit("--older-than must be >= 0")
    stats = recover_stale_claims(
        older_than_seconds=older_than,
        limit=max(1, int(args.limit or cfg.limit)),
    )
    summary = " ".join(f"{name}={len(ids)}" for name, ids in stats.released.items())
    print(f"OK: stale claim recovery complete {summary}")


if __name__ == "__main__":
    main()

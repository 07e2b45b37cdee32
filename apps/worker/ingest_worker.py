"""Drain ``events_inbox``: fetch each order upstream and store a raw snapshot."""

from __future__ import annotations

import argparse
import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from apps.backend.db import db_conn, infrastructure_guard, is_connection_error
from apps.worker.poll_loop import run_poll_loop
from contracts.errors import MalformedPayloadError
from contracts.queue_types import FailureClass, InboxEvent
from contracts.sources import OrderSource
from infra.config import QueueConfig, get_settings
from infra.logging_config import clear_request_context, set_request_context, setup_logging
from services.normalization.extraction import extract_document, yes_no
from services.queue import INBOX_QUEUE, RetryPolicy, WorkQueue, classify_failure
from services.snapshots import RawSnapshotStore

logger = logging.getLogger(__name__)

_OUTCOME_DONE = "done"
_OUTCOME_RETRY = "retry"
_OUTCOME_DEAD = "dead"


@dataclass(frozen=True)
class IngestBatchStats:
    """Summary of one claim-and-process pass."""

    claimed: int
    done: int
    retried: int
    dead: int


def load_source_factory(path: str) -> Callable[[], OrderSource]:
    """Resolve a ``module:attr`` path to a zero-argument source factory."""
    module_name, sep, attr = str(path or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"source factory must look like 'module:attr', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"source factory {path!r} is not callable")
    return factory


def build_source(path: str) -> OrderSource:
    source = load_source_factory(path)()
    if not isinstance(source, OrderSource):
        raise TypeError(f"source factory {path!r} returned {type(source).__name__}, not an OrderSource")
    return source


def is_canceled(event_kind: str, payload: Any) -> bool:
    """An order is canceled when the event says so or the payload flags it."""
    if "cancel" in str(event_kind or "").lower():
        return True
    try:
        document = extract_document(payload)
    except MalformedPayloadError:
        return False
    return yes_no(document.get("canceled")) is True


def retry_policy_from_config(cfg: QueueConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=cfg.max_attempts,
        base_backoff_seconds=cfg.base_backoff_seconds,
        max_backoff_seconds=cfg.max_backoff_seconds,
    )


class IngestionWorker:
    """Claim inbox events, fetch their order and persist the raw snapshot."""

    def __init__(
        self,
        source: OrderSource,
        *,
        policy: RetryPolicy | None = None,
        store: RawSnapshotStore | None = None,
        default_provider: str = "saipos",
    ) -> None:
        self.source = source
        self.default_provider = default_provider
        self.queue = WorkQueue(INBOX_QUEUE, policy=policy or RetryPolicy())
        self.store = store or RawSnapshotStore()

    def claim(self, batch_size: int) -> list[InboxEvent]:
        with infrastructure_guard("ingest_claim"), db_conn() as conn:
            rows = self.queue.claim(conn, batch_size)
            conn.commit()
        return [InboxEvent.from_row(row) for row in rows]

    def run_once(self, batch_size: int) -> IngestBatchStats:
        """Claim one batch and process it sequentially, oldest first."""
        events = self.claim(batch_size)
        if events:
            logger.info("ingest_claimed count=%s", len(events))
        outcomes = [self.process_event(event) for event in events]
        return IngestBatchStats(
            claimed=len(events),
            done=outcomes.count(_OUTCOME_DONE),
            retried=outcomes.count(_OUTCOME_RETRY),
            dead=outcomes.count(_OUTCOME_DEAD),
        )

    def process_event(self, event: InboxEvent) -> str:
        set_request_context(stage="ingest", queue=INBOX_QUEUE.name, event_id=event.id, order_id=event.order_id)
        try:
            with infrastructure_guard("ingest_event"):
                return self._process(event)
        finally:
            clear_request_context()

    def _process(self, event: InboxEvent) -> str:
        try:
            payload = self.source.fetch_order(order_id=event.order_id, store_id=event.store_id)
        except Exception as exc:
            if is_connection_error(exc):
                raise
            return self._record_failure(event, exc, classify_failure(exc))

        with db_conn() as conn:
            try:
                result = self.store.upsert(
                    conn,
                    provider=event.provider or self.default_provider,
                    store_id=event.store_id,
                    order_id=event.order_id,
                    canceled=is_canceled(event.event, payload),
                    received_at=event.received_at,
                    payload=payload,
                )
                if not self.queue.complete(conn, event.id):
                    logger.warning("ingest_complete_skipped event_id=%s reason=row_not_processing", event.id)
                conn.commit()
            except Exception as exc:
                if is_connection_error(exc):
                    raise
                conn.rollback()
                return self._fail_on(conn, event, exc, FailureClass.TRANSIENT)

        logger.info(
            "ingest_done event_id=%s order_id=%s raw_id=%s outcome=%s",
            event.id,
            event.order_id,
            result.id,
            result.outcome.value,
        )
        return _OUTCOME_DONE

    def _record_failure(self, event: InboxEvent, exc: BaseException, classification: FailureClass) -> str:
        with db_conn() as conn:
            return self._fail_on(conn, event, exc, classification)

    def _fail_on(
        self, conn: Any, event: InboxEvent, exc: BaseException, classification: FailureClass
    ) -> str:
        """Record a failed attempt.

        Only upstream errors are classified by message; a failure of the local
        store is always transient so it can never dead-letter on first sight.
        """
        decision = self.queue.fail(
            conn, event.id, str(exc), attempts=event.attempts, classification=classification
        )
        conn.commit()
        if decision.dead:
            logger.error(
                "ingest_dead event_id=%s order_id=%s attempts=%s reason=%s error=%s",
                event.id,
                event.order_id,
                event.attempts,
                decision.reason,
                str(exc)[:200],
            )
            return _OUTCOME_DEAD
        logger.warning(
            "ingest_retry event_id=%s order_id=%s attempts=%s delay_s=%.1f error=%s",
            event.id,
            event.order_id,
            event.attempts,
            decision.delay_seconds or 0.0,
            str(exc)[:200],
        )
        return _OUTCOME_RETRY


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the ingestion worker."""
    parser = argparse.ArgumentParser(description="Fetch inbox orders upstream and store raw snapshots.")
    parser.add_argument(
        "--source",
        default=None,
        help="OrderSource factory as module:attr (or INGEST__SOURCE_FACTORY env var).",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Events per claim (default: config).")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit.")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    setup_logging()
    settings = get_settings(reload=True)

    source_path = str(args.source or settings.ingest.source_factory or "").strip()
    if not source_path:
        raise SystemExit("Missing --source (or INGEST__SOURCE_FACTORY env var).")

    worker = IngestionWorker(
        build_source(source_path),
        policy=retry_policy_from_config(settings.queue),
        default_provider=settings.ingest.provider,
    )
    batch_size = int(args.batch_size or settings.queue.batch_size)

    logger.info("ingest_worker_started batch_size=%s source=%s", batch_size, source_path)
    run_poll_loop(
        lambda: worker.run_once(batch_size).claimed,
        poll_interval=settings.queue.poll_interval_seconds,
        error_pause=settings.queue.error_pause_seconds,
        max_iterations=1 if args.once else None,
    )


if __name__ == "__main__":
    main()

"""Unit tests for the ingestion worker event flow."""
# pylint: disable=too-few-public-methods

from __future__ import annotations

import random
import sys
import types
from typing import Any

import pytest

from apps.worker import ingest_worker
from contracts.errors import InfrastructureUnavailable, UpstreamError
from services.queue.retry_policy import RetryPolicy
from tests.fake_db import FakeConn, PgError, shared_db_conn
from tests.factories import make_event


class _FakeSource:
    """OrderSource double returning a payload or raising."""

    def __init__(self, *, payload: Any = None, error: BaseException | None = None) -> None:
        self._payload = payload if payload is not None else {"data": {"id_sale": 1, "canceled": "N"}}
        self._error = error
        self.calls: list[tuple[str, str]] = []

    def fetch_order(self, *, order_id: str, store_id: str) -> Any:
        self.calls.append((order_id, store_id))
        if self._error is not None:
            raise self._error
        return self._payload


class _NoJitter(random.Random):
    def random(self) -> float:
        return 0.0


def _handler(sql: str, _params: Any) -> Any:
    if sql.startswith("SELECT id, payload_hash FROM orders_raw"):
        return None
    if sql.startswith("INSERT INTO orders_raw"):
        return {"id": 77}
    return None


@pytest.fixture()
def conn(monkeypatch: pytest.MonkeyPatch) -> FakeConn:
    fake = FakeConn(_handler)
    monkeypatch.setattr(ingest_worker, "db_conn", shared_db_conn(fake))
    return fake


def _worker(source: _FakeSource, **kwargs: Any) -> ingest_worker.IngestionWorker:
    return ingest_worker.IngestionWorker(source, policy=RetryPolicy(rng=_NoJitter(), **kwargs))


def test_successful_event_upserts_snapshot_and_completes_in_one_commit(conn: FakeConn) -> None:
    source = _FakeSource()
    outcome = _worker(source).process_event(make_event(id=5, order_id="O9", store_id="S3"))

    assert outcome == "done"
    assert source.calls == [("O9", "S3")]
    assert conn.commits == 1
    _, insert_params = conn.statements("INSERT INTO orders_raw")[0]
    assert insert_params[:4] == ("saipos", "S3", "O9", False)
    _, done_params = conn.statements("UPDATE events_inbox SET status = 'done'")[0]
    assert done_params == (5,)


def test_transient_upstream_failure_schedules_retry(conn: FakeConn) -> None:
    source = _FakeSource(error=UpstreamError("504 Gateway Time-out"))
    outcome = _worker(source, base_backoff_seconds=2.0).process_event(make_event(id=5, attempts=2))

    assert outcome == "retry"
    _, params = conn.statements("UPDATE events_inbox SET status = 'error'")[0]
    assert params == ("504 Gateway Time-out", 4.0, 5)
    assert conn.statements("INSERT INTO orders_raw") == []
    assert conn.commits == 1


def test_not_found_upstream_failure_is_dead_lettered(conn: FakeConn) -> None:
    source = _FakeSource(error=UpstreamError("Não existe pedido", error_code=404))
    outcome = _worker(source).process_event(make_event(attempts=1))

    assert outcome == "dead"
    assert conn.statements("UPDATE events_inbox SET status = 'dead'")


def test_exhausted_attempts_dead_letter_even_when_transient(conn: FakeConn) -> None:
    source = _FakeSource(error=TimeoutError("timed out"))
    outcome = _worker(source, max_attempts=5).process_event(make_event(attempts=5))
    assert outcome == "dead"


def test_store_failure_rolls_back_before_recording_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(sql: str, params: Any) -> Any:
        if sql.startswith("SELECT id, payload_hash"):
            raise RuntimeError("statement timeout")
        return None

    fake = FakeConn(handler)
    monkeypatch.setattr(ingest_worker, "db_conn", shared_db_conn(fake))

    outcome = _worker(_FakeSource()).process_event(make_event())

    assert outcome == "retry"
    assert fake.rollbacks == 1
    assert fake.commits == 1
    assert fake.statements("UPDATE events_inbox SET status = 'done'") == []


def test_connection_error_escapes_as_infrastructure(monkeypatch: pytest.MonkeyPatch) -> None:
    psycopg2 = pytest.importorskip("psycopg2")

    def handler(sql: str, _params: Any) -> Any:
        raise psycopg2.OperationalError("could not connect to server")

    fake = FakeConn(handler)
    monkeypatch.setattr(ingest_worker, "db_conn", shared_db_conn(fake))

    with pytest.raises(InfrastructureUnavailable):
        _worker(_FakeSource()).process_event(make_event())
    assert fake.statements("UPDATE events_inbox") == []


@pytest.mark.parametrize(
    ("event_kind", "payload", "expected"),
    [
        ("order.canceled", {"data": {"canceled": "N"}}, True),
        ("ORDER_CANCELLED", {}, True),
        ("order.updated", {"data": {"canceled": "Y"}}, True),
        ("order.updated", {"canceled": True}, True),
        ("order.updated", {"data": {"canceled": "N"}}, False),
        ("order.updated", ["not", "a", "document"], False),
        ("order.updated", b"\xff\xfe{", False),
    ],
)
def test_is_canceled(event_kind: str, payload: Any, expected: bool) -> None:
    assert ingest_worker.is_canceled(event_kind, payload) is expected


def test_run_once_counts_outcomes(monkeypatch: pytest.MonkeyPatch) -> None:
    worker = _worker(_FakeSource())
    events = [make_event(id=1), make_event(id=2), make_event(id=3)]
    outcomes = iter(["done", "retry", "dead"])
    monkeypatch.setattr(worker, "claim", lambda _batch: events)
    monkeypatch.setattr(worker, "process_event", lambda _event: next(outcomes))

    assert worker.run_once(10) == ingest_worker.IngestBatchStats(claimed=3, done=1, retried=1, dead=1)


def test_empty_provider_falls_back_to_configured_default(conn: FakeConn) -> None:
    worker = ingest_worker.IngestionWorker(_FakeSource(), default_provider="acme")
    worker.process_event(make_event(provider=""))
    _, insert_params = conn.statements("INSERT INTO orders_raw")[0]
    assert insert_params[0] == "acme"


def test_build_source_loads_factory_from_module_path(monkeypatch: pytest.MonkeyPatch) -> None:
    module = types.ModuleType("fake_sources_mod")
    module.build = lambda: _FakeSource()  # type: ignore[attr-defined]
    module.broken = lambda: object()  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "fake_sources_mod", module)

    assert isinstance(ingest_worker.build_source("fake_sources_mod:build"), _FakeSource)
    with pytest.raises(TypeError, match="not an OrderSource"):
        ingest_worker.build_source("fake_sources_mod:broken")
    with pytest.raises(ValueError, match="module:attr"):
        ingest_worker.load_source_factory("fake_sources_mod")
    with pytest.raises(ValueError, match="not callable"):
        ingest_worker.load_source_factory("fake_sources_mod:missing")


def test_main_requires_source(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("INGEST__SOURCE_FACTORY", raising=False)
    monkeypatch.delenv("ORDER_SOURCE_FACTORY", raising=False)
    monkeypatch.setattr(ingest_worker, "setup_logging", lambda: None)
    with pytest.raises(SystemExit, match="Missing --source"):
        ingest_worker.main([])


def _broken_store(monkeypatch: pytest.MonkeyPatch) -> FakeConn:
    def handler(sql: str, _params: Any) -> Any:
        if sql.startswith("SELECT id, payload_hash"):
            raise PgError('column "payload_hash" does not exist', "42703")
        return None

    fake = FakeConn(handler)
    monkeypatch.setattr(ingest_worker, "db_conn", shared_db_conn(fake))
    return fake


def test_store_error_mentioning_missing_column_is_retried_not_dead(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = _broken_store(monkeypatch)

    outcome = _worker(_FakeSource()).process_event(make_event(attempts=1))

    assert outcome == "retry"
    assert fake.statements("UPDATE events_inbox SET status = 'dead'") == []
    _, params = fake.statements("UPDATE events_inbox SET status = 'error'")[0]
    assert params[0] == 'column "payload_hash" does not exist'


def test_store_error_still_dead_letters_once_attempts_run_out(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _broken_store(monkeypatch)

    outcome = _worker(_FakeSource(), max_attempts=3).process_event(make_event(attempts=3))

    assert outcome == "dead"
    assert fake.statements("UPDATE events_inbox SET status = 'dead'")

"""
db.py

Tiny DB helper module for PostgreSQL (psycopg2) with connection pooling.

Both pipeline workers run a tight poll loop, so the process keeps one
SimpleConnectionPool and hands out connections per claim / per row.

Helpers come in *_conn variants so a caller can keep several statements in a
single transaction (claim, process and finalize each commit explicitly).

``infrastructure_guard`` turns connectivity failures into
``InfrastructureUnavailable`` so the poll loop can tell a dead database apart
from a bad row.
"""

from __future__ import annotations

import atexit
import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from apps.backend.db_metrics import measure_query
from contracts.errors import InfrastructureUnavailable
from infra.config import get_settings


def _db_url() -> str:
    url = get_settings().db.url
    if not url:
        raise RuntimeError("DB_URL is not set")
    return url


# Keep a single global pool per process.
_POOL = None
_POOL_DSN: Optional[str] = None


def _get_pool():
    """Return a process-global psycopg2 pool, creating it on first use."""
    global _POOL, _POOL_DSN

    dsn = _db_url()
    if _POOL is not None and _POOL_DSN == dsn:
        return _POOL

    from psycopg2.pool import SimpleConnectionPool  # type: ignore

    db_cfg = get_settings().db
    _POOL = SimpleConnectionPool(
        minconn=1,
        maxconn=int(db_cfg.pool_maxconn),
        dsn=dsn,
        connect_timeout=int(db_cfg.connect_timeout),
    )
    _POOL_DSN = dsn
    return _POOL


def _close_pool() -> None:
    """Close the pool on process exit."""
    global _POOL
    try:
        if _POOL is not None:
            _POOL.closeall()
    except Exception:
        pass
    finally:
        _POOL = None


atexit.register(_close_pool)


@contextmanager
def db_conn() -> Iterator[Any]:
    """Yield a pooled psycopg2 connection.

    - Callers should NOT close the connection; it is returned to the pool.
    - Any transaction left open is rolled back before the connection is
      returned, so an uncommitted claim never leaks into the next checkout.
    """
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
    finally:
        try:
            conn.rollback()
        except Exception:
            pass
        try:
            pool.putconn(conn)
        except Exception:
            try:
                conn.close()
            except Exception:
                pass


def is_connection_error(exc: BaseException) -> bool:
    """Return True when *exc* means the database itself is unreachable."""
    try:
        import psycopg2  # type: ignore
    except ImportError:
        return False
    return isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError))


def is_unique_violation(exc: BaseException) -> bool:
    """Return True for Postgres ``unique_violation`` (SQLSTATE 23505)."""
    return str(getattr(exc, "pgcode", "") or "") == "23505"


@contextmanager
def infrastructure_guard(context: str) -> Iterator[None]:
    """Re-raise connectivity errors as ``InfrastructureUnavailable``."""
    try:
        yield
    except InfrastructureUnavailable:
        raise
    except Exception as exc:
        if is_connection_error(exc):
            raise InfrastructureUnavailable(f"{context}: {exc}") from exc
        raise


# ---------------------------
# Low-level *_conn primitives
# ---------------------------

def _query_name(sql: str, *, operation: str) -> str:
    """Return a stable query operation label for metrics/logging."""
    text = " ".join(str(sql or "").strip().split())
    if not text:
        return operation
    first_token = text.split(" ", 1)[0].lower()
    return f"{operation}:{first_token}"


def execute_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> int:
    """Execute a statement on an existing connection and return the rowcount."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_conn")):
            cur.execute(sql, params or ())
        return int(cur.rowcount or 0)


def execute_many_conn(conn: Any, sql: str, seq_of_params: list[Sequence[Any]]) -> None:
    """Execute a statement against many parameter sets on an existing connection."""
    if not seq_of_params:
        return
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="execute_many_conn")):
            cur.executemany(sql, seq_of_params)


# ---------------------------
# JSON helpers
# ---------------------------

def _json_default(obj: Any) -> Any:
    """JSON serializer for datetime/Decimal values found in payloads."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    return str(obj)


def to_jsonb(value: Any) -> str:
    """Serialize a Python object to a JSON string suitable for ::jsonb."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=_json_default)


# ---------------------------
# Dict row helpers
# ---------------------------

def _cols_from_description(desc: Any) -> list[str]:
    """Extract column names from cursor.description safely."""
    if not desc:
        return []
    cols: list[str] = []
    for i, d in enumerate(desc):
        name = None
        try:
            name = d[0]
        except (IndexError, KeyError, TypeError):
            name = None
        cols.append(str(name) if name else f"col_{i}")
    return cols


def _rows_to_dicts(cursor: Any, rows: list[tuple[Any, ...]]) -> list[dict[str, Any]]:
    """Convert cursor rows into list of dicts using cursor.description."""
    cols = _cols_from_description(getattr(cursor, "description", None))
    if not cols:
        return []
    return [dict(zip(cols, r, strict=False)) for r in rows]


def fetch_one_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[dict[str, Any]]:
    """Execute a query and return one row as a dict (or None)."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_one_dict_conn")):
            cur.execute(sql, params or ())
        row = cur.fetchone()
        if row is None:
            return None
        cols = _cols_from_description(getattr(cur, "description", None))
        if not cols:
            return None
        return dict(zip(cols, row, strict=False))


def fetch_all_dict_conn(conn: Any, sql: str, params: Optional[Sequence[Any]] = None) -> list[dict[str, Any]]:
    """Execute a query and return all rows as dicts."""
    with conn.cursor() as cur:
        with measure_query(_query_name(sql, operation="fetch_all_dict_conn")):
            cur.execute(sql, params or ())
        rows = cur.fetchall()
        return _rows_to_dicts(cur, rows)

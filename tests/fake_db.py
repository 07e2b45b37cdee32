"""psycopg2-shaped connection doubles that record SQL and replay scripted rows."""
# pylint: disable=too-few-public-methods

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Literal

Result = Any
Handler = Callable[[str, Any], Result]


def squash(sql: str) -> str:
    """Collapse whitespace so assertions can match SQL fragments."""
    return " ".join(str(sql).split())


class FakeCursor:
    """Cursor double: every execute is routed through the connection handler.

    The handler may return ``None`` (no rows, default rowcount), an ``int``
    (rowcount), a ``dict`` (one row) or a list of dicts (many rows). It may
    also raise to simulate a database error.
    """

    def __init__(self, conn: FakeConn) -> None:
        self._conn = conn
        self._rows: list[tuple[Any, ...]] = []
        self.description: list[tuple[str]] | None = None
        self.rowcount = -1

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, exc_type, exc, tb) -> Literal[False]:  # type: ignore[no-untyped-def]
        return False

    def execute(self, sql: str, params: Any = None) -> None:
        self._conn.executes.append((squash(sql), params))
        self._load(self._conn.handler(squash(sql), params))

    def executemany(self, sql: str, seq_of_params: Sequence[Any]) -> None:
        batch = list(seq_of_params)
        self._conn.executemanys.append((squash(sql), batch))
        self.rowcount = len(batch)

    def _load(self, result: Result) -> None:
        if result is None:
            rows: list[dict[str, Any]] = []
            self.rowcount = self._conn.default_rowcount
        elif isinstance(result, int):
            rows = []
            self.rowcount = result
        elif isinstance(result, dict):
            rows = [result]
            self.rowcount = 1
        else:
            rows = list(result)
            self.rowcount = len(rows)
        if rows:
            self.description = [(key,) for key in rows[0]]
            self._rows = [tuple(row.values()) for row in rows]
        else:
            self.description = None
            self._rows = []

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[tuple[Any, ...]]:
        return list(self._rows)


class FakeConn:
    """Connection double recording statements, commits and rollbacks."""

    def __init__(self, handler: Handler | None = None, *, default_rowcount: int = 1) -> None:
        self.handler: Handler = handler or (lambda _sql, _params: None)
        self.default_rowcount = default_rowcount
        self.executes: list[tuple[str, Any]] = []
        self.executemanys: list[tuple[str, list[Any]]] = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def statements(self, fragment: str) -> list[tuple[str, Any]]:
        """Executed statements whose SQL contains ``fragment``."""
        return [(sql, params) for sql, params in self.executes if fragment in sql]

    def batches(self, fragment: str) -> list[list[Any]]:
        """executemany parameter lists whose SQL contains ``fragment``."""
        return [batch for sql, batch in self.executemanys if fragment in sql]


@contextmanager
def conn_ctx(conn: FakeConn) -> Iterator[FakeConn]:
    yield conn


def shared_db_conn(conn: FakeConn) -> Callable[[], Any]:
    """Replacement for ``db_conn`` that always hands out ``conn``."""
    return lambda: conn_ctx(conn)


class PgError(Exception):
    """Stand-in for a psycopg2 error carrying a SQLSTATE."""

    def __init__(self, message: str, pgcode: str) -> None:
        super().__init__(message)
        self.pgcode = pgcode

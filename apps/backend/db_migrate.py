"""
Schema migration runner for the pipeline tables.

Usage:
  salesflow migrate
  salesflow migrate --dry-run
  python -m apps.backend.db_migrate --migrations-dir migrations

Migrations are ``NNN_name.sql`` or ``NNN_name.py`` (exposing ``upgrade(conn)``)
files applied in name order. Each file and its ``schema_migrations`` row are
committed together, so a failed file leaves nothing half-recorded.
"""

from __future__ import annotations

import argparse
import importlib.util
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from apps.backend.db import db_conn, execute_conn, fetch_all_dict_conn

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def _ensure_migrations_table(conn: Any) -> None:
    execute_conn(
        conn,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version TEXT PRIMARY KEY,
          applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """,
    )
    conn.commit()


def _applied_versions(conn: Any) -> set[str]:
    rows = fetch_all_dict_conn(conn, "SELECT version FROM schema_migrations")
    return {str(r["version"]) for r in rows if r.get("version")}


def _split_sql(sql: str) -> list[str]:
    """Split a SQL script on top-level semicolons.

    Semicolons inside quotes, comments and dollar-quoted bodies are kept.
    """
    statements: list[str] = []
    start = 0
    i = 0
    n = len(sql)
    while i < n:
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        ch = sql[i]
        if ch == "'":
            i += 1
            while i < n:
                if sql[i] == "'" and sql.startswith("''", i):
                    i += 2
                    continue
                if sql[i] == "'":
                    break
                i += 1
            i += 1
            continue
        if ch == "$":
            j = i + 1
            while j < n and (sql[j].isalnum() or sql[j] == "_"):
                j += 1
            if j < n and sql[j] == "$":
                tag = sql[i : j + 1]
                end = sql.find(tag, j + 1)
                i = n if end == -1 else end + len(tag)
                continue
        if ch == ";":
            stmt = sql[start:i].strip()
            if stmt:
                statements.append(stmt)
            start = i + 1
        i += 1

    tail = sql[start:].strip()
    if tail and _has_code(tail):
        statements.append(tail)
    return [s for s in statements if _has_code(s)]


def _has_code(stmt: str) -> bool:
    """True when ``stmt`` holds anything besides comments and whitespace."""
    for line in stmt.splitlines():
        text = line.strip()
        if text and not text.startswith("--"):
            return True
    return False


def _apply_sql_migration(conn: Any, path: Path) -> None:
    for stmt in _split_sql(path.read_text(encoding="utf-8")):
        execute_conn(conn, stmt)


def _apply_py_migration(conn: Any, path: Path) -> None:
    """Run ``upgrade(conn)`` from a Python migration module."""
    spec = importlib.util.spec_from_file_location(f"migration_{path.stem}", str(path))
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Failed to load migration module: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    upgrade = getattr(module, "upgrade", None)
    if upgrade is None:
        raise RuntimeError(f"Migration module missing upgrade(): {path}")
    upgrade(conn)


def _iter_migration_files(migrations_dir: Path) -> Iterable[Path]:
    if not migrations_dir.exists():
        return []
    return sorted(
        (p for p in migrations_dir.iterdir() if p.is_file() and p.suffix in {".sql", ".py"}),
        key=lambda p: p.name,
    )


def pending_migration_versions(conn: Any, *, migrations_dir: Path) -> list[str]:
    """Return versions present on disk but not yet recorded in the database."""
    _ensure_migrations_table(conn)
    applied = _applied_versions(conn)
    return [p.stem for p in _iter_migration_files(migrations_dir) if p.stem not in applied]


def ensure_schema_current(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR) -> None:
    """Fail fast when the database schema is behind the local migrations."""
    with db_conn() as conn:
        pending = pending_migration_versions(conn, migrations_dir=migrations_dir)
    if pending:
        raise RuntimeError(
            f"Database schema is out of date. Pending migrations: {', '.join(pending)}. "
            "Run `salesflow migrate` before starting the workers."
        )


def run_migrations(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR, dry_run: bool = False) -> list[str]:
    """Apply pending migrations and return their versions (nothing applied on dry-run)."""
    with db_conn() as conn:
        pending_versions = set(pending_migration_versions(conn, migrations_dir=migrations_dir))
        pending = [p for p in _iter_migration_files(migrations_dir) if p.stem in pending_versions]

        if dry_run:
            for path in pending:
                print(f"PENDING: {path.name}")
            if not pending:
                print("No pending migrations.")
            return [p.stem for p in pending]

        applied: list[str] = []
        for path in pending:
            logger.info("migration_apply version=%s", path.stem)
            try:
                if path.suffix == ".sql":
                    _apply_sql_migration(conn, path)
                else:
                    _apply_py_migration(conn, path)
                execute_conn(conn, "INSERT INTO schema_migrations (version) VALUES (%s)", (path.stem,))
                conn.commit()
            except Exception:
                conn.rollback()
                logger.exception("migration_failed version=%s", path.stem)
                raise
            applied.append(path.stem)
            print(f"Applied {path.stem}")
        return applied


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apply database migrations.")
    parser.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying.")
    parser.add_argument(
        "--migrations-dir",
        default=str(DEFAULT_MIGRATIONS_DIR),
        help="Path to migrations directory (default: ./migrations).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    run_migrations(migrations_dir=Path(args.migrations_dir), dry_run=bool(args.dry_run))


if __name__ == "__main__":
    main()

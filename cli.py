"""
salesflow CLI (flat-layout friendly).

Usage
-----
salesflow migrate [--dry-run]
salesflow ingest --source mypkg.saipos:build_source [--once]
salesflow normalize [--once]
salesflow recover --older-than 900
"""

from __future__ import annotations

import argparse
from collections.abc import Callable
from typing import List, Optional

from version import ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION


def _forward(module_name: str) -> Callable[[List[str]], None]:
    """Return the ``main(argv)`` of a worker module, imported on demand."""

    def run(argv: List[str]) -> None:
        import importlib

        module = importlib.import_module(module_name)
        module.main(argv)

    return run


def _require_schema() -> None:
    from apps.backend.db_migrate import ensure_schema_current

    ensure_schema_current()


def cmd_migrate(rest: List[str]) -> None:
    _forward("apps.backend.db_migrate")(rest)


def cmd_ingest(rest: List[str]) -> None:
    _require_schema()
    _forward("apps.worker.ingest_worker")(rest)


def cmd_normalize(rest: List[str]) -> None:
    _require_schema()
    _forward("apps.worker.normalize_worker")(rest)


def cmd_recover(rest: List[str]) -> None:
    _forward("apps.worker.recover_stale")(rest)


COMMANDS: dict[str, tuple[Callable[[List[str]], None], str]] = {
    "migrate": (cmd_migrate, "Apply pending database migrations."),
    "ingest": (cmd_ingest, "Run the ingestion worker (events_inbox -> orders_raw)."),
    "normalize": (cmd_normalize, "Run the normalization worker (orders_raw -> orders, ...)."),
    "recover": (cmd_recover, "Release queue rows whose claim went stale."),
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="salesflow", description="Sales order ingestion pipeline")
    p.add_argument(
        "--version",
        action="version",
        version=f"{ENGINE_NAME} {ENGINE_VERSION} (schema {SCHEMA_VERSION})",
    )
    sub = p.add_subparsers(dest="cmd", required=True)
    for name, (_, help_text) in COMMANDS.items():
        sub.add_parser(name, help=help_text, add_help=False)
    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args, rest = parser.parse_known_args(argv)
    handler, _ = COMMANDS[args.cmd]
    handler(rest)


if __name__ == "__main__":
    main()

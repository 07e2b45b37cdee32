"""Validate repository layout: root entries and migration file naming."""

from __future__ import annotations

import argparse
import re
from pathlib import Path

ROOT_ALLOWED = {
    ".env",
    ".git",
    ".github",
    ".gitignore",
    "DESIGN.md",
    "LICENSE",
    "README.md",
    "REVIEW_DIFF.patch",
    "REVIEW_FINDINGS.md",
    "SPEC_FULL.md",
    "TEACHER.txt",
    "TRIAGE.md",
    "apps",
    "cli.py",
    "contracts",
    "infra",
    "migrations",
    "pyproject.toml",
    "services",
    "spec.md",
    "tests",
    "tools",
    "version.py",
}

ROOT_IGNORED_PREFIXES = (
    ".hypothesis",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".venv",
    "__pycache__",
    "build",
    "dist",
)
ROOT_IGNORED_SUFFIXES = (".egg-info",)

MIGRATION_NAME = re.compile(r"^(?P<number>\d{3})_[a-z0-9_]+\.(sql|py)$")


def list_unexpected_root_entries(repo_root: Path) -> list[str]:
    """Return sorted root entries that violate the structure policy."""
    unexpected: list[str] = []
    for entry in repo_root.iterdir():
        name = entry.name
        if any(name.startswith(prefix) for prefix in ROOT_IGNORED_PREFIXES):
            continue
        if name.endswith(ROOT_IGNORED_SUFFIXES):
            continue
        if name not in ROOT_ALLOWED:
            unexpected.append(name)
    return sorted(unexpected)


def list_migration_problems(migrations_dir: Path) -> list[str]:
    """Return naming problems: bad file names and duplicated sequence numbers."""
    if not migrations_dir.is_dir():
        return []
    problems: list[str] = []
    seen: dict[str, str] = {}
    for entry in sorted(migrations_dir.iterdir(), key=lambda p: p.name):
        if entry.name.startswith("__pycache__"):
            continue
        match = MIGRATION_NAME.match(entry.name)
        if match is None:
            problems.append(f"{entry.name}: expected NNN_snake_name.sql|.py")
            continue
        number = match.group("number")
        if number in seen:
            problems.append(f"{entry.name}: number {number} already used by {seen[number]}")
        else:
            seen[number] = entry.name
    return problems


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Check repository layout policy.")
    parser.add_argument(
        "--repo-root",
        default=str(Path(__file__).resolve().parents[2]),
        help="Repository root path (default: auto-detected).",
    )
    args = parser.parse_args(argv)

    repo_root = Path(args.repo_root).resolve()
    violations = list_unexpected_root_entries(repo_root)
    migration_problems = list_migration_problems(repo_root / "migrations")
    if not violations and not migration_problems:
        print("OK: repository layout matches policy.")
        return 0

    if violations:
        print("ERROR: unexpected root-level entries found:")
        for name in violations:
            print(f"- {name}")
        print("Move these under apps/, services/, tools/, or another owned subtree.")
    if migration_problems:
        print("ERROR: migration naming problems:")
        for problem in migration_problems:
            print(f"- {problem}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

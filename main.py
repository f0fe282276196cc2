# main.py
"""CLI entry point for Inkwell orchestration administration."""

from __future__ import annotations

import argparse
import sys

from orchestration.cli_runner import run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="inkwell")
    parser.add_argument("--db", default=None, help="Path to the SQLite store")
    parser.add_argument(
        "--overrides", default=None, help="Path to the persisted feature override file"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("flags", help="Show feature flags with resolved state")
    for name, help_text in (
        ("enable", "Override a flag to enabled"),
        ("disable", "Override a flag to disabled"),
        ("clear-override", "Remove a flag override"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("name")
    commands.add_parser("rollback", help="Disable every advanced feature")
    commands.add_parser("enable-stable", help="Enable the stable feature set")
    commands.add_parser("compat", help="Print the schema compatibility report")

    cleanup = commands.add_parser("cache-cleanup", help="Remove old cache entries")
    cleanup.add_argument("--days", type=int, default=30)
    commands.add_parser("cache-purge", help="Remove every cache entry")
    commands.add_parser("cache-stats", help="Show cache statistics")

    logs = commands.add_parser("logs", help="List generation log entries")
    logs.add_argument("--project", default=None)
    logs.add_argument("--tier", choices=["exact", "semantic", "template"], default=None)
    logs.add_argument("--min-quality", type=float, default=None)
    logs.add_argument("--limit", type=int, default=20)
    logs.add_argument("--offset", type=int, default=0)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and run the requested command."""
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())

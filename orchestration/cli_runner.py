# orchestration/cli_runner.py
"""Command-line runner for the administrative surface."""

from __future__ import annotations

import argparse
import asyncio

import structlog
from rich.console import Console
from rich.table import Table

from core.db_manager import DatabaseManager
from core.llm_interface import LLMService
from features.override_store import DEFAULT_OVERRIDES_FILE, JsonOverrideStore
from models.cache_models import CacheTier
from utils.logging import setup_logging

from .service_layer import GenerationService

logger = structlog.get_logger(__name__)

console = Console()


async def _flags(service: GenerationService, args: argparse.Namespace) -> None:
    table = Table(title="Feature flags")
    for column in ("name", "enabled", "default", "override", "schema", "depends on"):
        table.add_column(column)
    for status in await service.feature_statuses():
        flag = status.flag
        table.add_row(
            flag.name,
            "yes" if status.actually_enabled else "no",
            "on" if flag.enabled else "off",
            "" if status.override is None else str(status.override),
            "ok" if status.schema_available else "missing",
            ", ".join(flag.depends_on),
        )
    console.print(table)


async def _logs(service: GenerationService, args: argparse.Namespace) -> None:
    page = await service.list_logs(
        project_id=args.project,
        cache_tier=CacheTier(args.tier) if args.tier else None,
        min_quality=args.min_quality,
        limit=args.limit,
        offset=args.offset,
    )
    table = Table(title=f"Generation logs ({page.total} total)")
    for column in ("execution", "time", "status", "strategy", "cache", "quality", "retries", "cost"):
        table.add_column(column)
    for entry in page.entries:
        table.add_row(
            entry.execution_id[:8],
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.status,
            entry.route_decision.strategy.value,
            entry.cache_path.value if entry.cache_path else "-",
            f"{entry.quality_score.overall:.1f}" if entry.quality_score else "-",
            str(entry.retry_count),
            f"{entry.cost:.4f}",
        )
    console.print(table)


async def _cache_stats(service: GenerationService, args: argparse.Namespace) -> None:
    stats = await service.cache_stats()
    console.print(f"Entries: {stats.total_entries}  Hits: {stats.total_hits}")
    console.print(f"Average cached quality: {stats.average_quality}")
    for tier in CacheTier:
        console.print(
            f"  {tier.value:<9} entries={stats.entries_by_tier.get(tier.value, 0)} "
            f"hits={stats.hits_by_tier.get(tier.value, 0)}"
        )


async def _execute(args: argparse.Namespace) -> int:
    llm = LLMService()
    overrides = JsonOverrideStore(args.overrides or DEFAULT_OVERRIDES_FILE)
    service = GenerationService(DatabaseManager(args.db), llm, override_store=overrides)
    try:
        if args.command != "compat":
            await service.startup()
        command = args.command
        if command == "flags":
            await _flags(service, args)
        elif command == "enable":
            service.set_override(args.name, True)
            console.print(await service.feature_report(), markup=False)
        elif command == "disable":
            service.set_override(args.name, False)
            console.print(await service.feature_report(), markup=False)
        elif command == "clear-override":
            service.clear_override(args.name)
            console.print(await service.feature_report(), markup=False)
        elif command == "rollback":
            service.rollback_to_legacy()
            console.print(await service.feature_report(), markup=False)
        elif command == "enable-stable":
            service.enable_stable_features()
            console.print(await service.feature_report(), markup=False)
        elif command == "compat":
            console.print(await service.compatibility_report(), markup=False)
            report = await service.compatibility()
            return 0 if report.is_compatible else 1
        elif command == "cache-cleanup":
            removed = await service.cache_cleanup(args.days)
            console.print(f"Removed {removed} cache entries older than {args.days} days")
        elif command == "cache-purge":
            removed = await service.cache_purge()
            console.print(f"Purged {removed} cache entries")
        elif command == "cache-stats":
            await _cache_stats(service, args)
        elif command == "logs":
            await _logs(service, args)
        return 0
    finally:
        await llm.aclose()


def run(args: argparse.Namespace) -> int:
    """Configure logging and run one administrative command."""
    setup_logging()
    try:
        return asyncio.run(_execute(args))
    except KeyError as exc:
        console.print(f"[red]{exc.args[0]}[/red]")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130

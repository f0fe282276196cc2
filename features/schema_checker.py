# features/schema_checker.py
"""Read-only comparison of the durable store against what the pipeline needs."""

from __future__ import annotations

import sqlite3
from collections import defaultdict

import structlog
from async_lru import alru_cache

from config import settings
from core.db_manager import DatabaseManager
from models.feature_models import MissingColumn, SchemaCompatibilityReport

logger = structlog.get_logger(__name__)

REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "generation_logs": (
        "execution_id",
        "project_id",
        "template_id",
        "prompt_signature",
        "model_id",
        "params",
        "route_decision",
        "cache_path",
        "cache_hit_count",
        "response_hash",
        "tokens_used",
        "cost",
        "quality_score",
        "quality_overall",
        "rule_violations",
        "repair_actions",
        "retry_count",
        "total_duration_ms",
        "error_type",
        "error_details",
        "status",
        "supersedes_execution_id",
        "timestamp",
    ),
    "cached_executions": (
        "tier",
        "fingerprint",
        "template_id",
        "result",
        "metadata",
        "embedding_blob",
        "hit_count",
        "created_at",
        "expires_at",
    ),
}

REQUIRED_TABLES: tuple[str, ...] = tuple(REQUIRED_COLUMNS)

# Feature -> "table" or "table.column" entries that must all exist.
FEATURE_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "generation-logs": (
        "generation_logs",
        "generation_logs.retry_count",
        "generation_logs.error_type",
    ),
    "enhanced-cache": (
        "cached_executions",
        "cached_executions.tier",
        "cached_executions.embedding_blob",
    ),
    "cost-monitoring": ("generation_logs.cost", "generation_logs.tokens_used"),
    "quality-evaluation": (
        "generation_logs.quality_score",
        "generation_logs.rule_violations",
    ),
    "auto-repair": ("generation_logs.repair_actions",),
    "model-routing": ("generation_logs.route_decision",),
    "semantic-cache-probe": ("cached_executions.embedding_blob",),
}


def _requirement_met(requirement: str, inventory: dict[str, set[str]]) -> bool:
    table, _, column = requirement.partition(".")
    if table not in inventory:
        return False
    return not column or column in inventory[table]


class SchemaCompatibilityChecker:
    """Introspects the store; never changes it.

    The table inventory is memoized for ``SCHEMA_CHECK_TTL_SECONDS`` so the
    feature gate can consult it on every request.
    """

    def __init__(
        self,
        db: DatabaseManager,
        required_version: str = settings.REQUIRED_SCHEMA_VERSION,
    ) -> None:
        self.db = db
        self.required_version = required_version
        self._load_inventory = alru_cache(maxsize=1, ttl=settings.SCHEMA_CHECK_TTL_SECONDS)(
            self._read_inventory
        )

    async def _read_inventory(self) -> tuple[dict[str, set[str]], str | None]:
        try:
            inventory = await self.db.table_inventory()
        except sqlite3.Error as exc:
            logger.error("Schema introspection failed", path=self.db.db_path, error=str(exc))
            return {}, None
        version = await self.db.current_schema_version()
        return inventory, version

    def invalidate(self) -> None:
        """Forget the memoized inventory, e.g. right after a migration."""
        self._load_inventory.cache_clear()

    async def check_compatibility(self) -> SchemaCompatibilityReport:
        inventory, version = await self._load_inventory()
        missing_tables = [t for t in REQUIRED_TABLES if t not in inventory]
        missing_columns = [
            MissingColumn(table=table, column=column)
            for table, columns in REQUIRED_COLUMNS.items()
            if table in inventory
            for column in columns
            if column not in inventory[table]
        ]
        report = SchemaCompatibilityReport(
            current_version=version,
            required_version=self.required_version,
            missing_tables=missing_tables,
            missing_columns=missing_columns,
        )
        if report.upgrade_required:
            report = report.model_copy(
                update={"upgrade_instructions": self._upgrade_instructions(report)}
            )
        logger.info(
            "Schema compatibility checked",
            current=version,
            required=self.required_version,
            compatible=report.is_compatible,
        )
        return report

    @staticmethod
    def _group_columns(columns: list[MissingColumn]) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = defaultdict(list)
        for missing in columns:
            grouped[missing.table].append(missing.column)
        return grouped

    def _upgrade_instructions(self, report: SchemaCompatibilityReport) -> list[str]:
        lines = ["The durable store must be upgraded before the new features can run.", ""]
        if report.missing_tables:
            lines.append("Missing tables:")
            lines.extend(f"  - {table}" for table in report.missing_tables)
            lines.append("")
        if report.missing_columns:
            lines.append("Missing columns:")
            for table, columns in self._group_columns(report.missing_columns).items():
                lines.append(f"  {table}:")
                lines.extend(f"    - {column}" for column in columns)
            lines.append("")
        if not report.missing_tables and not report.missing_columns:
            lines.append(
                f"Schema version {report.current_version or 'none'} is older than "
                f"{report.required_version}."
            )
            lines.append("")
        lines.append("To upgrade:")
        lines.append(
            f"  Run DatabaseManager.init_schema() against {self.db.db_path} "
            f"to apply migrations up to {self.required_version}."
        )
        return lines

    async def is_feature_available(
        self, feature: str, min_version: str | None = None
    ) -> bool:
        """True only when every table/column ``feature`` needs exists.

        A feature with no declared requirements is available when the store
        is at ``min_version`` or newer.
        """
        inventory, version = await self._load_inventory()
        requirements = FEATURE_REQUIREMENTS.get(feature)
        if requirements is None:
            if min_version is None:
                return False
            return version is not None and version >= min_version
        return all(_requirement_met(req, inventory) for req in requirements)

    async def compatibility_report(self) -> str:
        report = await self.check_compatibility()
        rule = "=" * 60
        lines = [
            rule,
            "Schema Compatibility Report",
            rule,
            "",
            f"Current Version: {report.current_version or 'none'}",
            f"Required Version: {report.required_version}",
            f"Status: {'Compatible' if report.is_compatible else 'Upgrade Required'}",
            "",
        ]
        if not report.is_compatible:
            lines.append("Issues Found:")
            lines.append("-" * 60)
            if report.missing_tables:
                lines.append(f"Missing Tables ({len(report.missing_tables)}):")
                lines.extend(f"  - {table}" for table in report.missing_tables)
                lines.append("")
            if report.missing_columns:
                lines.append(f"Missing Columns ({len(report.missing_columns)}):")
                for table, columns in self._group_columns(report.missing_columns).items():
                    lines.append(f"  {table}: {', '.join(columns)}")
                lines.append("")
            lines.extend(report.upgrade_instructions)
            lines.append("")
        lines.append(rule)
        return "\n".join(lines)

# audit/cost_monitor.py
"""Cost accounting and budget alerts derived from the audit log."""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import structlog

from .generation_logger import GenerationLogger

logger = structlog.get_logger(__name__)

DEFAULT_CACHE_HIT_THRESHOLD = 0.2
DEFAULT_COST_PER_GENERATION_LIMIT = 0.1
BUDGET_WARNING_RATIO = 0.8


@dataclass
class BudgetConfig:
    project_id: str
    daily_budget: float | None = None
    monthly_budget: float | None = None
    cost_per_generation_limit: float | None = DEFAULT_COST_PER_GENERATION_LIMIT
    cache_hit_rate_threshold: float | None = DEFAULT_CACHE_HIT_THRESHOLD


@dataclass
class CostStats:
    total_generations: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    cost_per_project: dict[str, float] = field(default_factory=dict)
    cost_per_chapter: dict[str, float] = field(default_factory=dict)
    cache_hit_rate: float = 0.0
    cost_savings: float = 0.0
    model_usage_distribution: dict[str, int] = field(default_factory=dict)
    average_cost_per_generation: float = 0.0
    cost_per_1k_words: float = 0.0


@dataclass(frozen=True)
class CostAlert:
    type: Literal["budget_exceeded", "high_cost_rate", "cache_miss_rate"]
    severity: Literal["warning", "critical"]
    message: str
    threshold: float
    current: float


def _day_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start = moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start = moment.astimezone(timezone.utc).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class CostMonitor:
    """Reads cost figures from ``generation_logs``; never writes to it."""

    def __init__(self, generation_logger: GenerationLogger, clock=None) -> None:
        self.generation_logger = generation_logger
        self._budgets: dict[str, BudgetConfig] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def set_budget(self, config: BudgetConfig) -> None:
        self._budgets[config.project_id] = config
        logger.info("Budget config set", project_id=config.project_id)

    def get_budget(self, project_id: str) -> BudgetConfig:
        return self._budgets.get(project_id) or BudgetConfig(project_id=project_id)

    async def _rows(
        self, project_id: str | None, since: datetime | None, until: datetime | None
    ) -> list[Any]:
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since.astimezone(timezone.utc).isoformat())
        if until is not None:
            clauses.append("timestamp < ?")
            params.append(until.astimezone(timezone.utc).isoformat())
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self.generation_logger.db.fetch_all(
            "SELECT project_id, chapter_id, model_id, tokens_used, cost, cache_path, "
            f"prompt_metadata FROM generation_logs{where}",
            params,
        )

    async def cost_stats(
        self,
        project_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> CostStats:
        rows = await self._rows(project_id, since, until)
        stats = CostStats()
        if not rows:
            return stats

        per_project: dict[str, float] = defaultdict(float)
        per_chapter: dict[str, float] = defaultdict(float)
        models: dict[str, int] = defaultdict(int)
        hits = 0
        words = 0
        for row in rows:
            cost = float(row["cost"] or 0.0)
            stats.total_generations += 1
            stats.total_tokens += int(row["tokens_used"] or 0)
            stats.total_cost += cost
            per_project[row["project_id"]] += cost
            if row["chapter_id"]:
                per_chapter[row["chapter_id"]] += cost
            models[row["model_id"] or "unknown"] += 1
            if row["cache_path"]:
                hits += 1
            metadata = json.loads(row["prompt_metadata"]) if row["prompt_metadata"] else {}
            words += int(metadata.get("response_words") or 0)

        stats.total_cost = round(stats.total_cost, 6)
        stats.cost_per_project = {k: round(v, 6) for k, v in per_project.items()}
        stats.cost_per_chapter = {k: round(v, 6) for k, v in per_chapter.items()}
        stats.model_usage_distribution = dict(models)
        stats.cache_hit_rate = hits / stats.total_generations
        stats.average_cost_per_generation = stats.total_cost / stats.total_generations
        # A cache hit is assumed to have saved one average generation.
        stats.cost_savings = round(hits * stats.average_cost_per_generation, 6)
        stats.cost_per_1k_words = (stats.total_cost / words) * 1000 if words else 0.0

        logger.info(
            "Cost stats",
            project_id=project_id,
            generations=stats.total_generations,
            tokens=stats.total_tokens,
            cost=stats.total_cost,
            cache_hit_rate=round(stats.cache_hit_rate, 3),
            savings=stats.cost_savings,
        )
        return stats

    @staticmethod
    def _budget_alert(label: str, spent: float, budget: float | None) -> CostAlert | None:
        if not budget:
            return None
        if spent > budget:
            return CostAlert(
                type="budget_exceeded",
                severity="critical",
                message=f"{label} budget exceeded: {spent:.4f} / {budget:.2f}",
                threshold=budget,
                current=spent,
            )
        if spent > budget * BUDGET_WARNING_RATIO:
            return CostAlert(
                type="budget_exceeded",
                severity="warning",
                message=f"Approaching {label.lower()} budget limit: {spent:.4f} / {budget:.2f}",
                threshold=budget,
                current=spent,
            )
        return None

    async def check_alerts(self, project_id: str) -> list[CostAlert]:
        config = self.get_budget(project_id)
        now = self._clock()
        daily = await self.cost_stats(project_id, *_day_bounds(now))
        alerts: list[CostAlert] = []

        alert = self._budget_alert("Daily", daily.total_cost, config.daily_budget)
        if alert:
            alerts.append(alert)
        if config.monthly_budget:
            monthly = await self.cost_stats(project_id, *_month_bounds(now))
            alert = self._budget_alert("Monthly", monthly.total_cost, config.monthly_budget)
            if alert:
                alerts.append(alert)

        if daily.total_generations:
            limit = config.cost_per_generation_limit
            if limit and daily.average_cost_per_generation > limit:
                alerts.append(
                    CostAlert(
                        type="high_cost_rate",
                        severity="warning",
                        message=(
                            f"High cost per generation: {daily.average_cost_per_generation:.4f} "
                            f"(limit: {limit:.4f})"
                        ),
                        threshold=limit,
                        current=daily.average_cost_per_generation,
                    )
                )
            threshold = config.cache_hit_rate_threshold
            if threshold and daily.cache_hit_rate < threshold:
                alerts.append(
                    CostAlert(
                        type="cache_miss_rate",
                        severity="warning",
                        message=(
                            f"Low cache hit rate: {daily.cache_hit_rate:.1%} "
                            f"(threshold: {threshold:.1%})"
                        ),
                        threshold=threshold,
                        current=daily.cache_hit_rate,
                    )
                )

        if alerts:
            logger.warning("Cost alerts raised", project_id=project_id, count=len(alerts))
        return alerts

    async def cost_by_scene(self, chapter_id: str) -> dict[str, float]:
        rows = await self.generation_logger.db.fetch_all(
            "SELECT scene_id, SUM(cost) AS cost FROM generation_logs "
            "WHERE chapter_id = ? AND scene_id IS NOT NULL GROUP BY scene_id",
            (chapter_id,),
        )
        return {row["scene_id"]: round(float(row["cost"] or 0.0), 6) for row in rows}

from datetime import datetime, timedelta, timezone

import pytest

from audit.cost_monitor import BudgetConfig, CostMonitor
from audit.generation_logger import GenerationLogger
from models.audit_models import GenerationLogEntry, RouteDecision, RouteStrategy
from models.cache_models import CacheTier

NOW = datetime(2026, 5, 20, 15, 30, tzinfo=timezone.utc)


def entry(n, cost, project="proj-1", chapter="ch-1", scene="sc-1", cache_path=None, when=NOW, words=500):
    return GenerationLogEntry(
        execution_id=f"exec-{n}",
        project_id=project,
        chapter_id=chapter,
        scene_id=scene,
        template_id="scene-draft",
        template_version="3",
        prompt_signature="sig",
        prompt_metadata={"response_words": words},
        model_id="Qwen3-4B" if cache_path is None else "Qwen3-14B",
        route_decision=RouteDecision(
            strategy=RouteStrategy.CACHE if cache_path else RouteStrategy.SMALL,
            rationale="test",
            score=0.1,
            confidence=0.5,
        ),
        cache_path=cache_path,
        tokens_used=100,
        cost=cost,
        timestamp=when,
    )


@pytest.fixture
def generation_logger(db):
    return GenerationLogger(db)


@pytest.fixture
def monitor(generation_logger):
    return CostMonitor(generation_logger, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_cost_stats_aggregate_by_project_and_chapter(generation_logger, monitor):
    await generation_logger.record(entry(1, 0.04))
    await generation_logger.record(entry(2, 0.02, chapter="ch-2"))
    await generation_logger.record(entry(3, 0.0, cache_path=CacheTier.EXACT))
    await generation_logger.record(entry(4, 0.5, project="proj-2"))

    stats = await monitor.cost_stats("proj-1")

    assert stats.total_generations == 3
    assert stats.total_tokens == 300
    assert stats.total_cost == pytest.approx(0.06)
    assert stats.cost_per_project == {"proj-1": pytest.approx(0.06)}
    assert stats.cost_per_chapter == {"ch-1": pytest.approx(0.04), "ch-2": pytest.approx(0.02)}
    assert stats.cache_hit_rate == pytest.approx(1 / 3)
    assert stats.cost_savings == pytest.approx(0.02)
    assert stats.model_usage_distribution == {"Qwen3-4B": 2, "Qwen3-14B": 1}
    assert stats.cost_per_1k_words == pytest.approx(0.06 / 1500 * 1000)


@pytest.mark.asyncio
async def test_empty_log_gives_zero_stats(monitor):
    stats = await monitor.cost_stats("nobody")
    assert stats.total_generations == 0
    assert stats.cost_per_1k_words == 0.0


@pytest.mark.asyncio
async def test_time_window_filters(generation_logger, monitor):
    await generation_logger.record(entry(1, 0.04, when=NOW - timedelta(days=2)))
    await generation_logger.record(entry(2, 0.01))

    recent = await monitor.cost_stats("proj-1", since=NOW - timedelta(hours=1))
    assert recent.total_generations == 1
    assert recent.total_cost == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_budget_alerts(generation_logger, monitor):
    await generation_logger.record(entry(1, 0.9))
    await generation_logger.record(entry(2, 0.3, when=NOW - timedelta(days=3)))
    monitor.set_budget(BudgetConfig(project_id="proj-1", daily_budget=1.0, monthly_budget=1.0))

    alerts = {(a.type, a.severity, a.threshold) for a in await monitor.check_alerts("proj-1")}

    assert ("budget_exceeded", "warning", 1.0) in alerts  # daily 0.9 of 1.0
    assert ("budget_exceeded", "critical", 1.0) in alerts  # monthly 1.2 of 1.0
    assert ("high_cost_rate", "warning", 0.1) in alerts
    assert ("cache_miss_rate", "warning", 0.2) in alerts


@pytest.mark.asyncio
async def test_no_alerts_without_todays_activity(generation_logger, monitor):
    await generation_logger.record(entry(1, 0.9, when=NOW - timedelta(days=1)))
    assert await monitor.check_alerts("proj-1") == []


@pytest.mark.asyncio
async def test_default_budget_and_scene_costs(generation_logger, monitor):
    assert monitor.get_budget("proj-9").cost_per_generation_limit == 0.1

    await generation_logger.record(entry(1, 0.01, scene="sc-1"))
    await generation_logger.record(entry(2, 0.02, scene="sc-1"))
    await generation_logger.record(entry(3, 0.05, scene="sc-2"))
    assert await monitor.cost_by_scene("ch-1") == {"sc-1": 0.03, "sc-2": 0.05}

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from audit.generation_logger import GenerationLogger, summarize
from core.errors import AuditWriteError, ErrorKind
from core.usage import TokenUsage
from models.audit_models import LogFilters, RouteDecision, RouteStrategy
from models.cache_models import CacheTier
from models.quality_models import QualityScore
from fakes import GOOD_TEXT, make_request


def score(overall):
    return QualityScore(
        overall=overall, completeness=overall, consistency=overall, coherence=overall, fluency=overall
    )


async def log_success(logger, quality=85.0, cache_path=None, request=None, model="Qwen3-4B"):
    context = logger.start(request or make_request())
    context.record_attempt("small", model, "accepted", TokenUsage(total_tokens=40, cost=0.02))
    context.model_id = model
    context.quality_score = score(quality) if quality is not None else None
    context.cache_path = cache_path
    context.route_decision = RouteDecision(
        strategy=RouteStrategy.CACHE if cache_path else RouteStrategy.SMALL,
        rationale="test",
        score=0.2,
        confidence=0.6,
    )
    return await logger.finalize(context, GOOD_TEXT)


@pytest.mark.asyncio
async def test_finalize_writes_one_row_per_execution(db):
    logger = GenerationLogger(db)
    entry = await log_success(logger)

    stored = await logger.get_execution(entry.execution_id)
    assert stored.execution_id == entry.execution_id
    assert stored.status == "success"
    assert stored.tokens_used == 40
    assert stored.cost == pytest.approx(0.02)
    assert stored.quality_score.overall == 85.0
    assert stored.response_summary == summarize(GOOD_TEXT)
    assert stored.prompt_metadata["response_words"] > 50
    assert stored.error_details == {}
    assert stored.route_decision.strategy == RouteStrategy.SMALL


@pytest.mark.asyncio
async def test_context_cannot_be_finalized_twice(db):
    logger = GenerationLogger(db)
    context = logger.start(make_request())
    await logger.finalize(context, GOOD_TEXT)
    with pytest.raises(AuditWriteError):
        await logger.finalize(context, GOOD_TEXT)


@pytest.mark.asyncio
async def test_failed_execution_keeps_attempts(db):
    logger = GenerationLogger(db)
    context = logger.start(make_request())
    context.record_attempt("small", "Qwen3-4B", "error", error_kind=ErrorKind.TIMEOUT, detail="slow")
    context.retry_count = 1
    context.fail(ErrorKind.TIMEOUT, "Call timed out", {"retries_exhausted": 1})
    entry = await logger.finalize(context, None)

    stored = await logger.get_execution(entry.execution_id)
    assert stored.status == "failed"
    assert stored.error_kind == ErrorKind.TIMEOUT
    assert stored.error_details["attempts"][0]["outcome"] == "error"
    assert stored.response_hash is None
    assert stored.route_decision.rationale == "no routing decision reached"


@pytest.mark.asyncio
async def test_log_rows_are_append_only(db):
    logger = GenerationLogger(db)
    entry = await log_success(logger)

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        await db.execute("UPDATE generation_logs SET cost = 0 WHERE execution_id = ?", (entry.execution_id,))
    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        await db.execute("DELETE FROM generation_logs")


@pytest.mark.asyncio
async def test_duplicate_execution_id_raises_audit_error(db):
    logger = GenerationLogger(db)
    entry = await log_success(logger)
    with pytest.raises(AuditWriteError):
        await logger.record(entry)


@pytest.mark.asyncio
async def test_correction_supersedes_without_touching_original(db):
    logger = GenerationLogger(db)
    original = await log_success(logger)

    correction = await logger.record_correction(
        original.execution_id, GOOD_TEXT.replace("Mara", "Maren"), "renamed lead", score(92.0)
    )

    assert correction.supersedes_execution_id == original.execution_id
    assert correction.prompt_metadata["correction_reason"] == "renamed lead"
    unchanged = await logger.get_execution(original.execution_id)
    assert unchanged.response_hash == original.response_hash
    assert [c.execution_id for c in await logger.corrections_for(original.execution_id)] == [
        correction.execution_id
    ]

    with pytest.raises(ValueError):
        await logger.record_correction("missing", "text", "reason")


@pytest.mark.asyncio
async def test_query_filters_and_pagination(db):
    logger = GenerationLogger(db)
    await log_success(logger, quality=95.0)
    await log_success(logger, quality=60.0, cache_path=CacheTier.EXACT)
    await log_success(logger, quality=75.0, cache_path=CacheTier.SEMANTIC)
    other = make_request(context={"project_id": "proj-2"})
    await log_success(logger, quality=80.0, request=other)

    assert (await logger.query()).total == 4
    assert (await logger.query(LogFilters(project_id="proj-2"))).total == 1
    assert (await logger.query(LogFilters(cache_tier=CacheTier.EXACT))).total == 1
    assert (await logger.query(LogFilters(cache_miss_only=True))).total == 2
    assert (await logger.query(LogFilters(min_quality=75.0))).total == 3

    page = await logger.query(limit=3, offset=0)
    assert len(page.entries) == 3 and page.has_more
    assert page.entries[0].project_id == "proj-2"  # newest first
    second = await logger.query(limit=3, offset=3)
    assert len(second.entries) == 1 and not second.has_more

    future = datetime.now(timezone.utc) + timedelta(hours=1)
    assert (await logger.query(LogFilters(since=future))).total == 0
    assert (await logger.query(LogFilters(until=future))).total == 4


@pytest.mark.asyncio
async def test_stats_and_cache_performance(db):
    logger = GenerationLogger(db)
    await log_success(logger, quality=95.0)
    await log_success(logger, quality=72.0, cache_path=CacheTier.EXACT)
    await log_success(logger, quality=40.0, cache_path=CacheTier.TEMPLATE, model="Qwen3-14B")

    stats = await logger.stats("proj-1")
    assert stats.total_generations == 3
    assert stats.successful_generations == 3
    assert stats.quality_distribution == {"excellent": 1, "good": 1, "fair": 0, "poor": 1}
    assert stats.cache_hit_rate == pytest.approx(2 / 3)
    assert stats.model_distribution == {"Qwen3-4B": 2, "Qwen3-14B": 1}
    assert stats.average_quality == pytest.approx(69.0)

    performance = await logger.cache_performance("proj-1")
    assert (performance.exact_hits, performance.template_hits, performance.misses) == (1, 1, 1)
    assert performance.hit_rate == pytest.approx(2 / 3)


def test_summarize_truncates_long_text():
    summary = summarize("word " * 100)
    assert len(summary) <= 200
    assert summary.endswith("...")

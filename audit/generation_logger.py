# audit/generation_logger.py
"""Append-only audit trail of generation executions."""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from core.db_manager import DatabaseManager
from core.errors import AuditWriteError, ErrorKind
from core.usage import TokenUsage
from models.audit_models import (
    CachePerformance,
    GenerationLogEntry,
    LogFilters,
    LogPage,
    LogStats,
    RouteDecision,
    RouteStrategy,
)
from models.cache_models import CacheTier
from models.generation_models import GenerationRequest
from models.quality_models import QualityScore, RepairAction, RuleViolation
from utils.text_processing import count_words

logger = structlog.get_logger(__name__)

RESPONSE_SUMMARY_CHARS = 200
MAX_PAGE_SIZE = 500

_INSERT_COLUMNS = (
    "execution_id",
    "project_id",
    "chapter_id",
    "scene_id",
    "template_id",
    "template_version",
    "prompt_signature",
    "prompt_metadata",
    "model_id",
    "model_version",
    "params",
    "route_decision",
    "cache_path",
    "cache_hit_count",
    "response_hash",
    "response_summary",
    "tokens_used",
    "cost",
    "quality_score",
    "quality_overall",
    "rule_violations",
    "repair_actions",
    "retry_count",
    "total_duration_ms",
    "error_type",
    "error_message",
    "error_details",
    "status",
    "supersedes_execution_id",
    "timestamp",
)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def summarize(text: str, limit: int = RESPONSE_SUMMARY_CHARS) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[: limit - 3].rstrip() + "..."


def _utc_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


@dataclass
class AttemptRecord:
    tier: str
    model_id: str
    outcome: str
    tokens_used: int = 0
    cost: float = 0.0
    error_kind: str | None = None
    detail: str | None = None


@dataclass
class ExecutionContext:
    """In-memory state of one logical request across all its attempts.

    Nothing is written while the request is in flight; ``GenerationLogger``
    turns the context into exactly one audit row at the terminal outcome.
    """

    request: GenerationRequest
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempts: list[AttemptRecord] = field(default_factory=list)
    model_id: str | None = None
    model_version: str | None = None
    route_decision: RouteDecision | None = None
    cache_path: CacheTier | None = None
    cache_hit_count: int | None = None
    quality_score: QualityScore | None = None
    violations: list[RuleViolation] = field(default_factory=list)
    repairs: list[RepairAction] = field(default_factory=list)
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    finalized: bool = False

    def record_attempt(
        self,
        tier: str,
        model_id: str,
        outcome: str,
        usage: TokenUsage | None = None,
        error_kind: ErrorKind | None = None,
        detail: str | None = None,
    ) -> None:
        if usage is not None:
            self.usage.add(usage)
        self.attempts.append(
            AttemptRecord(
                tier=tier,
                model_id=model_id,
                outcome=outcome,
                tokens_used=usage.total_tokens if usage else 0,
                cost=usage.cost if usage else 0.0,
                error_kind=error_kind.value if error_kind else None,
                detail=detail,
            )
        )

    def fail(self, kind: ErrorKind, message: str, details: dict[str, Any] | None = None) -> None:
        self.error_kind = kind
        self.error_message = message
        self.error_details = dict(details or {})

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def to_entry(self, response_text: str | None) -> GenerationLogEntry:
        request = self.request
        status = "failed" if self.error_kind is not None else "success"
        route = self.route_decision or RouteDecision(
            strategy=RouteStrategy.BIG,
            rationale="no routing decision reached",
            score=0.0,
            confidence=0.0,
        )
        details = dict(self.error_details)
        if self.attempts:
            details.setdefault(
                "attempts",
                [
                    {k: v for k, v in vars(a).items() if v is not None}
                    for a in self.attempts
                ],
            )
        return GenerationLogEntry(
            execution_id=self.execution_id,
            project_id=request.project_id,
            chapter_id=request.chapter_id,
            scene_id=request.scene_id,
            template_id=request.template_id,
            template_version=request.template_version,
            prompt_signature=sha256_hex(request.rendered_prompt),
            prompt_metadata={
                "prompt_chars": len(request.rendered_prompt),
                "prompt_words": count_words(request.rendered_prompt),
                "response_words": count_words(response_text) if response_text else 0,
                "template_variables": sorted(request.template_variables),
                "target_model_class": (
                    request.target_model_class.value if request.target_model_class else None
                ),
                **self.metadata,
            },
            model_id=self.model_id,
            model_version=self.model_version,
            parameters=dict(request.parameters),
            route_decision=route,
            cache_path=self.cache_path,
            cache_hit_count=self.cache_hit_count,
            response_hash=sha256_hex(response_text) if response_text else None,
            response_summary=summarize(response_text) if response_text else None,
            tokens_used=self.usage.total_tokens,
            cost=round(self.usage.cost, 6),
            quality_score=self.quality_score,
            rule_violations=list(self.violations),
            repair_actions=list(self.repairs),
            retry_count=self.retry_count,
            total_duration_ms=self.elapsed_ms,
            error_kind=self.error_kind,
            error_message=self.error_message,
            error_details=details if status == "failed" else {},
            status=status,
        )


def _dump_list(items: list[Any]) -> str:
    return json.dumps([item.model_dump(mode="json") for item in items], ensure_ascii=False)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


class GenerationLogger:
    """Writes and reads ``generation_logs``. Rows are never updated or deleted."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def start(self, request: GenerationRequest) -> ExecutionContext:
        context = ExecutionContext(request=request)
        logger.debug(
            "Execution started",
            execution_id=context.execution_id,
            template_id=request.template_id,
        )
        return context

    async def finalize(
        self, context: ExecutionContext, response_text: str | None = None
    ) -> GenerationLogEntry:
        """Persist the single terminal record for ``context``."""
        if context.finalized:
            raise AuditWriteError(f"Execution {context.execution_id} already recorded")
        entry = context.to_entry(response_text)
        await self.record(entry)
        context.finalized = True
        return entry

    async def record(self, entry: GenerationLogEntry) -> None:
        """Append one entry. Raises ``AuditWriteError`` if it was not persisted."""
        values = (
            entry.execution_id,
            entry.project_id,
            entry.chapter_id,
            entry.scene_id,
            entry.template_id,
            entry.template_version,
            entry.prompt_signature,
            json.dumps(entry.prompt_metadata, ensure_ascii=False, default=str),
            entry.model_id,
            entry.model_version,
            json.dumps(entry.parameters, ensure_ascii=False, default=str),
            entry.route_decision.model_dump_json(),
            entry.cache_path.value if entry.cache_path else None,
            entry.cache_hit_count,
            entry.response_hash,
            entry.response_summary,
            entry.tokens_used,
            entry.cost,
            entry.quality_score.model_dump_json() if entry.quality_score else None,
            entry.quality_score.overall if entry.quality_score else None,
            _dump_list(entry.rule_violations),
            _dump_list(entry.repair_actions),
            entry.retry_count,
            entry.total_duration_ms,
            entry.error_kind.value if entry.error_kind else None,
            entry.error_message,
            json.dumps(entry.error_details, ensure_ascii=False, default=str),
            entry.status,
            entry.supersedes_execution_id,
            _utc_iso(entry.timestamp),
        )
        sql = (
            f"INSERT INTO generation_logs ({', '.join(_INSERT_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _INSERT_COLUMNS)})"
        )
        try:
            await self.db.execute(sql, values)
        except sqlite3.Error as exc:
            logger.error(
                "Audit append failed",
                execution_id=entry.execution_id,
                error=str(exc),
            )
            raise AuditWriteError(
                f"Could not persist audit entry {entry.execution_id}: {exc}"
            ) from exc
        logger.info(
            "Generation logged",
            execution_id=entry.execution_id,
            status=entry.status,
            cache_path=entry.cache_path.value if entry.cache_path else None,
            strategy=entry.route_decision.strategy.value,
            retry_count=entry.retry_count,
            cost=entry.cost,
        )

    async def record_correction(
        self,
        original_execution_id: str,
        corrected_text: str,
        reason: str,
        quality_score: QualityScore | None = None,
        model_id: str | None = None,
    ) -> GenerationLogEntry:
        """Append an entry superseding ``original_execution_id``."""
        original = await self.get_execution(original_execution_id)
        if original is None:
            raise ValueError(f"Unknown execution {original_execution_id}")
        entry = GenerationLogEntry(
            execution_id=str(uuid.uuid4()),
            project_id=original.project_id,
            chapter_id=original.chapter_id,
            scene_id=original.scene_id,
            template_id=original.template_id,
            template_version=original.template_version,
            prompt_signature=original.prompt_signature,
            prompt_metadata={**original.prompt_metadata, "correction_reason": reason},
            model_id=model_id or original.model_id,
            model_version=original.model_version,
            parameters=original.parameters,
            route_decision=RouteDecision(
                strategy=original.route_decision.strategy,
                rationale=f"correction of {original_execution_id}: {reason}",
                score=original.route_decision.score,
                confidence=original.route_decision.confidence,
            ),
            response_hash=sha256_hex(corrected_text),
            response_summary=summarize(corrected_text),
            quality_score=quality_score,
            supersedes_execution_id=original_execution_id,
        )
        await self.record(entry)
        return entry

    async def get_execution(self, execution_id: str) -> GenerationLogEntry | None:
        row = await self.db.fetch_one(
            "SELECT * FROM generation_logs WHERE execution_id = ?", (execution_id,)
        )
        return self._row_to_entry(row) if row else None

    async def corrections_for(self, execution_id: str) -> list[GenerationLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM generation_logs WHERE supersedes_execution_id = ? ORDER BY id",
            (execution_id,),
        )
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _where(filters: LogFilters) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column in ("project_id", "chapter_id", "scene_id", "template_id", "status", "model_id"):
            value = getattr(filters, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if filters.cache_tier is not None:
            clauses.append("cache_path = ?")
            params.append(filters.cache_tier.value)
        elif filters.cache_miss_only:
            clauses.append("cache_path IS NULL")
        if filters.min_quality is not None:
            clauses.append("quality_overall >= ?")
            params.append(filters.min_quality)
        if filters.since is not None:
            clauses.append("timestamp >= ?")
            params.append(_utc_iso(filters.since))
        if filters.until is not None:
            clauses.append("timestamp < ?")
            params.append(_utc_iso(filters.until))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def query(
        self, filters: LogFilters | None = None, limit: int = 50, offset: int = 0
    ) -> LogPage:
        """Read-only, paginated listing, newest first."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        where, params = self._where(filters or LogFilters())
        total_row = await self.db.fetch_one(
            f"SELECT COUNT(*) AS total FROM generation_logs{where}", params
        )
        rows = await self.db.fetch_all(
            f"SELECT * FROM generation_logs{where} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return LogPage(
            entries=[self._row_to_entry(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            limit=limit,
            offset=offset,
        )

    async def stats(self, project_id: str | None = None) -> LogStats:
        where, params = self._where(LogFilters(project_id=project_id))
        rows = await self.db.fetch_all(
            "SELECT model_id, template_id, tokens_used, cost, quality_overall, cache_path, status "
            f"FROM generation_logs{where}",
            params,
        )
        stats = LogStats()
        if not rows:
            return stats
        models: Counter[str] = Counter()
        templates: Counter[str] = Counter()
        qualities: list[float] = []
        hits = 0
        for row in rows:
            stats.total_generations += 1
            if row["status"] == "success":
                stats.successful_generations += 1
            else:
                stats.failed_generations += 1
            stats.total_tokens += int(row["tokens_used"] or 0)
            stats.total_cost += float(row["cost"] or 0.0)
            models[row["model_id"] or "unknown"] += 1
            templates[row["template_id"]] += 1
            if row["cache_path"]:
                hits += 1
            if row["quality_overall"] is not None:
                quality = float(row["quality_overall"])
                qualities.append(quality)
                if quality >= 90:
                    stats.quality_distribution["excellent"] += 1
                elif quality >= 70:
                    stats.quality_distribution["good"] += 1
                elif quality >= 50:
                    stats.quality_distribution["fair"] += 1
                else:
                    stats.quality_distribution["poor"] += 1
        stats.total_cost = round(stats.total_cost, 6)
        stats.average_quality = round(sum(qualities) / len(qualities), 1) if qualities else 0.0
        stats.cache_hit_rate = hits / stats.total_generations
        stats.model_distribution = dict(models)
        stats.template_distribution = dict(templates)
        return stats

    async def cache_performance(self, project_id: str | None = None) -> CachePerformance:
        where, params = self._where(LogFilters(project_id=project_id, status="success"))
        rows = await self.db.fetch_all(
            f"SELECT cache_path, COUNT(*) AS n FROM generation_logs{where} GROUP BY cache_path",
            params,
        )
        performance = CachePerformance()
        for row in rows:
            count = int(row["n"])
            tier = row["cache_path"]
            if tier == CacheTier.EXACT.value:
                performance.exact_hits += count
            elif tier == CacheTier.SEMANTIC.value:
                performance.semantic_hits += count
            elif tier == CacheTier.TEMPLATE.value:
                performance.template_hits += count
            else:
                performance.misses += count
        return performance

    @staticmethod
    def _row_to_entry(row: Any) -> GenerationLogEntry:
        keys = set(row.keys())

        def col(name: str, default: Any = None) -> Any:
            return row[name] if name in keys else default

        route_data = _loads(col("route_decision"), None) or {
            "strategy": RouteStrategy.BIG.value,
            "rationale": "not recorded",
            "score": 0.0,
            "confidence": 0.0,
        }
        quality_data = _loads(col("quality_score"), None)
        try:
            return GenerationLogEntry(
                execution_id=row["execution_id"],
                project_id=row["project_id"],
                chapter_id=row["chapter_id"],
                scene_id=row["scene_id"],
                template_id=row["template_id"],
                template_version=row["template_version"],
                prompt_signature=row["prompt_signature"],
                prompt_metadata=_loads(row["prompt_metadata"], {}),
                model_id=row["model_id"],
                model_version=row["model_version"],
                parameters=_loads(row["params"], {}),
                route_decision=RouteDecision.model_validate(route_data),
                cache_path=CacheTier(row["cache_path"]) if row["cache_path"] else None,
                cache_hit_count=col("cache_hit_count"),
                response_hash=row["response_hash"],
                response_summary=row["response_summary"],
                tokens_used=row["tokens_used"] or 0,
                cost=row["cost"] or 0.0,
                quality_score=QualityScore.model_validate(quality_data) if quality_data else None,
                rule_violations=_loads(col("rule_violations"), []),
                repair_actions=_loads(col("repair_actions"), []),
                retry_count=row["retry_count"] or 0,
                total_duration_ms=row["total_duration_ms"] or 0,
                error_kind=ErrorKind(row["error_type"]) if row["error_type"] else None,
                error_message=row["error_message"],
                error_details=_loads(col("error_details"), {}),
                status=row["status"],
                supersedes_execution_id=col("supersedes_execution_id"),
                timestamp=row["timestamp"],
            )
        except (ValidationError, ValueError) as exc:
            logger.error(
                "Unreadable audit row", execution_id=row["execution_id"], error=str(exc)
            )
            raise

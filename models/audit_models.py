# models/audit_models.py
"""Routing decisions and the permanent audit record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import Field

from core.errors import ErrorKind

from .cache_models import CacheTier
from .generation_models import ContractModel
from .quality_models import QualityScore, RepairAction, RuleViolation


class RouteStrategy(str, Enum):
    CACHE = "cache"
    SMALL = "small"
    SMALL_WITH_FALLBACK = "small-with-fallback"
    BIG = "big"


class FeatureContribution(ContractModel):
    name: str
    value: float
    weight: float
    contribution: float


class RouteDecision(ContractModel):
    """How a request was served and why. Immutable once produced."""

    strategy: RouteStrategy
    rationale: str
    score: float
    confidence: float
    top_features: list[FeatureContribution] = Field(default_factory=list)
    transitions: list[str] = Field(default_factory=list)
    features: dict[str, Any] = Field(default_factory=dict)


class GenerationLogEntry(ContractModel):
    """The permanent audit record for one logical generation request."""

    execution_id: str
    project_id: str
    chapter_id: str | None = None
    scene_id: str | None = None
    template_id: str
    template_version: str
    prompt_signature: str
    prompt_metadata: dict[str, Any] = Field(default_factory=dict)
    model_id: str | None = None
    model_version: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    route_decision: RouteDecision
    cache_path: CacheTier | None = None
    cache_hit_count: int | None = None
    response_hash: str | None = None
    response_summary: str | None = None
    tokens_used: int = 0
    cost: float = 0.0
    quality_score: QualityScore | None = None
    rule_violations: list[RuleViolation] = Field(default_factory=list)
    repair_actions: list[RepairAction] = Field(default_factory=list)
    retry_count: int = 0
    total_duration_ms: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    error_details: dict[str, Any] = Field(default_factory=dict)
    status: Literal["success", "failed"] = "success"
    supersedes_execution_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class LogFilters:
    project_id: str | None = None
    chapter_id: str | None = None
    scene_id: str | None = None
    template_id: str | None = None
    cache_tier: CacheTier | None = None
    # True selects only entries served without a cache hit
    cache_miss_only: bool = False
    min_quality: float | None = None
    status: str | None = None
    model_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None


@dataclass
class LogPage:
    entries: list[GenerationLogEntry]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


@dataclass
class CachePerformance:
    exact_hits: int = 0
    semantic_hits: int = 0
    template_hits: int = 0
    misses: int = 0

    @property
    def total_hits(self) -> int:
        return self.exact_hits + self.semantic_hits + self.template_hits

    @property
    def hit_rate(self) -> float:
        total = self.total_hits + self.misses
        return self.total_hits / total if total else 0.0


@dataclass
class LogStats:
    total_generations: int = 0
    successful_generations: int = 0
    failed_generations: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_quality: float = 0.0
    cache_hit_rate: float = 0.0
    model_distribution: dict[str, int] = field(default_factory=dict)
    template_distribution: dict[str, int] = field(default_factory=dict)
    quality_distribution: dict[str, int] = field(
        default_factory=lambda: {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
    )


@dataclass
class GenerationResult:
    """What the caller receives for a successful submission."""

    execution_id: str
    result: str
    quality_score: QualityScore | None
    route_decision: RouteDecision
    cache_path: CacheTier | None = None
    hit_count: int | None = None
    retry_count: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    model_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "result": self.result,
            "qualityScore": self.quality_score.to_dict() if self.quality_score else None,
            "cachePath": self.cache_path.value if self.cache_path else None,
        }


__all__ = [
    "CachePerformance",
    "FeatureContribution",
    "GenerationLogEntry",
    "GenerationResult",
    "LogFilters",
    "LogPage",
    "LogStats",
    "RouteDecision",
    "RouteStrategy",
]

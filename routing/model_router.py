# routing/model_router.py
"""Cost/quality-aware choice of model tier for a generation request."""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog

from config import settings
from models.audit_models import FeatureContribution, RouteDecision, RouteStrategy
from models.cache_models import CacheEntry
from models.generation_models import GenerationRequest, ModelClass

logger = structlog.get_logger(__name__)

STYLE_COMPLEXITY_MARKERS: tuple[str, ...] = (
    "stream of consciousness",
    "unreliable narrator",
    "nonlinear",
    "non-linear",
    "multiple pov",
    "multiple points of view",
    "epistolary",
    "foreshadow",
    "subtext",
    "literary",
    "lyrical",
    "poetic",
    "allegor",
    "dialect",
    "second person",
    "frame story",
    "flashback",
    "ensemble cast",
)

_BUDGET_LEVELS = {"tight": 1.0, "low": 1.0, "medium": 0.5, "normal": 0.5, "high": 0.0}

# Route-trace states.
START = "Start"
CACHE_CHECK = "CacheCheck"
HIT = "Hit"
MISS = "Miss"
STRATEGY_SELECT = "StrategySelect"
SMALL_MODEL = "SmallModel"
BIG_MODEL = "BigModel"
FALLBACK_BIG_MODEL = "FallbackBigModel"
QUALITY_CHECK = "QualityCheck"
DONE = "Done"
FAILED = "Failed"


class FailureHistory:
    """Per-template success/failure counts of the small tier."""

    def __init__(self) -> None:
        self._attempts: dict[str, int] = defaultdict(int)
        self._failures: dict[str, int] = defaultdict(int)

    def record(self, template_id: str, failed: bool) -> None:
        self._attempts[template_id] += 1
        if failed:
            self._failures[template_id] += 1

    def failure_rate(self, template_id: str) -> float:
        """Laplace-smoothed failure rate; 0.5 for a template never seen."""
        return (self._failures[template_id] + 1) / (self._attempts[template_id] + 2)

    def snapshot(self, template_id: str) -> dict[str, int]:
        return {
            "attempts": self._attempts[template_id],
            "failures": self._failures[template_id],
        }


@dataclass
class RouteTrace:
    """Transitions taken through the routing state machine for one request."""

    transitions: list[str] = field(default_factory=lambda: [START])

    def step(self, state: str) -> None:
        self.transitions.append(state)

    @property
    def escalated(self) -> bool:
        return FALLBACK_BIG_MODEL in self.transitions


@dataclass(frozen=True)
class RoutingPlan:
    first_tier: ModelClass
    score: float
    confidence: float
    features: dict[str, float]
    top_features: list[FeatureContribution]
    rationale: str


class ModelRouter:
    def __init__(
        self,
        history: FailureHistory | None = None,
        threshold: float = settings.ROUTING_THRESHOLD,
        weights: dict[str, float] | None = None,
        long_prompt_chars: int = settings.LONG_PROMPT_CHARS,
    ) -> None:
        self.history = history or FailureHistory()
        self.threshold = threshold
        self.weights = weights or {
            "content_length": settings.ROUTING_WEIGHT_CONTENT_LENGTH,
            "style_complexity": settings.ROUTING_WEIGHT_STYLE_COMPLEXITY,
            "small_failure_rate": settings.ROUTING_WEIGHT_SMALL_FAILURE_RATE,
            "constraint_load": settings.ROUTING_WEIGHT_CONSTRAINT_LOAD,
            "budget": settings.ROUTING_WEIGHT_BUDGET,
        }
        self.long_prompt_chars = max(1, long_prompt_chars)

    @staticmethod
    def model_for(tier: ModelClass) -> str:
        return settings.SMALL_MODEL if tier == ModelClass.SMALL else settings.LARGE_MODEL

    @staticmethod
    def model_version_for(tier: ModelClass) -> str | None:
        if tier == ModelClass.SMALL:
            return settings.SMALL_MODEL_VERSION
        return settings.LARGE_MODEL_VERSION

    def extract_features(self, request: GenerationRequest) -> dict[str, float]:
        hints = request.model_preference_hints
        return {
            "content_length": min(1.0, len(request.rendered_prompt) / self.long_prompt_chars),
            "style_complexity": self._style_complexity(request.rendered_prompt, hints),
            "small_failure_rate": self.history.failure_rate(request.template_id),
            "constraint_load": min(1.0, request.constraints.hard_constraint_count() / 10.0),
            "budget": self._budget_pressure(hints),
        }

    @staticmethod
    def _style_complexity(prompt: str, hints: dict[str, Any]) -> float:
        hinted = hints.get("styleComplexity", hints.get("style_complexity"))
        if isinstance(hinted, (int, float)):
            return max(0.0, min(1.0, float(hinted)))
        lowered = prompt.lower()
        hits = sum(1 for marker in STYLE_COMPLEXITY_MARKERS if marker in lowered)
        if re.search(r"\bgenre\s*:\s*\w+\s*/\s*\w+", lowered):
            hits += 1  # cross-genre blends
        return min(1.0, hits / 3.0)

    @staticmethod
    def _budget_pressure(hints: dict[str, Any]) -> float:
        budget = hints.get("budget")
        if isinstance(budget, (int, float)):
            return max(0.0, min(1.0, float(budget)))
        if isinstance(budget, str):
            return _BUDGET_LEVELS.get(budget.lower(), 0.0)
        return 0.0

    def _score_bounds(self) -> tuple[float, float]:
        low = sum(w for w in self.weights.values() if w < 0)
        high = sum(w for w in self.weights.values() if w > 0)
        return low, high

    def _confidence(self, score: float) -> float:
        low, high = self._score_bounds()
        if score <= self.threshold:
            span = self.threshold - low
            distance = self.threshold - score
        else:
            span = high - self.threshold
            distance = score - self.threshold
        if span <= 0:
            return 1.0
        return round(max(0.0, min(1.0, distance / span)), 4)

    def select(self, request: GenerationRequest, routing_enabled: bool = True) -> RoutingPlan:
        """Pick the first model tier for a cache miss."""
        features = self.extract_features(request)
        contributions = [
            FeatureContribution(
                name=name,
                value=round(value, 4),
                weight=self.weights.get(name, 0.0),
                contribution=round(value * self.weights.get(name, 0.0), 4),
            )
            for name, value in features.items()
        ]
        score = round(sum(c.contribution for c in contributions), 4)
        top = sorted(contributions, key=lambda c: abs(c.contribution), reverse=True)[:3]
        top_names = ", ".join(c.name for c in top)

        if not routing_enabled:
            tier = request.target_model_class or ModelClass.BIG
            return RoutingPlan(
                first_tier=tier,
                score=score,
                confidence=1.0,
                features=features,
                top_features=top,
                rationale=f"model routing disabled; using {tier.value} model",
            )

        if request.target_model_class is not None:
            tier = request.target_model_class
            rationale = (
                f"target model class pinned to {tier.value}; score {score:.2f} "
                f"vs threshold {self.threshold:.2f} (top: {top_names})"
            )
            confidence = 1.0
        elif score <= self.threshold:
            tier = ModelClass.SMALL
            rationale = (
                f"score {score:.2f} <= threshold {self.threshold:.2f}; "
                f"small model first (top: {top_names})"
            )
            confidence = self._confidence(score)
        else:
            tier = ModelClass.BIG
            rationale = (
                f"score {score:.2f} > threshold {self.threshold:.2f}; "
                f"big model first (top: {top_names})"
            )
            confidence = self._confidence(score)

        logger.debug(
            "Routing plan",
            template_id=request.template_id,
            tier=tier.value,
            score=score,
            confidence=confidence,
        )
        return RoutingPlan(
            first_tier=tier,
            score=score,
            confidence=confidence,
            features=features,
            top_features=top,
            rationale=rationale,
        )

    @staticmethod
    def cache_decision(
        entry: CacheEntry, trace: RouteTrace, extra: dict[str, Any] | None = None
    ) -> RouteDecision:
        similarity = entry.similarity
        rationale = f"served from {entry.tier.value} cache"
        if similarity is not None:
            rationale += f" (similarity {similarity:.4f})"
        features: dict[str, Any] = {"cache_tier": entry.tier.value}
        if similarity is not None:
            features["similarity"] = round(similarity, 4)
        features.update(extra or {})
        return RouteDecision(
            strategy=RouteStrategy.CACHE,
            rationale=rationale,
            score=0.0,
            confidence=1.0 if similarity is None else round(similarity, 4),
            top_features=[],
            transitions=list(trace.transitions),
            features=features,
        )

    @staticmethod
    def model_decision(
        plan: RoutingPlan, trace: RouteTrace, extra: dict[str, Any] | None = None
    ) -> RouteDecision:
        if plan.first_tier == ModelClass.BIG:
            strategy = RouteStrategy.BIG
        elif trace.escalated:
            strategy = RouteStrategy.SMALL_WITH_FALLBACK
        else:
            strategy = RouteStrategy.SMALL
        rationale = plan.rationale
        if strategy == RouteStrategy.SMALL_WITH_FALLBACK:
            rationale += "; small model failed, escalated once to big model"
        features: dict[str, Any] = {k: round(v, 4) for k, v in plan.features.items()}
        features.update(extra or {})
        return RouteDecision(
            strategy=strategy,
            rationale=rationale,
            score=plan.score,
            confidence=plan.confidence,
            top_features=plan.top_features,
            transitions=list(trace.transitions),
            features=features,
        )

    def record_small_outcome(self, template_id: str, failed: bool) -> None:
        self.history.record(template_id, failed)

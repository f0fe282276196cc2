"""Central package for orchestration data models."""

from .audit_models import (
    CachePerformance,
    FeatureContribution,
    GenerationLogEntry,
    GenerationResult,
    LogFilters,
    LogPage,
    LogStats,
    RouteDecision,
    RouteStrategy,
)
from .cache_models import (
    CACHE_TIER_PRECEDENCE,
    CacheEntry,
    CacheMetadata,
    CacheStats,
    CacheTier,
)
from .feature_models import (
    FeatureFlag,
    FeatureStatus,
    MissingColumn,
    SchemaCompatibilityReport,
)
from .generation_models import (
    FingerprintSet,
    GenerationConstraints,
    GenerationContext,
    GenerationRequest,
    ModelClass,
    ModelResponse,
    SemanticSignature,
)
from .quality_models import (
    EvaluationOutcome,
    QualityScore,
    RepairAction,
    RepairOutcome,
    RuleViolation,
    Severity,
)

__all__ = [
    "CACHE_TIER_PRECEDENCE",
    "CacheEntry",
    "CacheMetadata",
    "CachePerformance",
    "CacheStats",
    "CacheTier",
    "EvaluationOutcome",
    "FeatureContribution",
    "FeatureFlag",
    "FeatureStatus",
    "FingerprintSet",
    "GenerationConstraints",
    "GenerationContext",
    "GenerationLogEntry",
    "GenerationRequest",
    "GenerationResult",
    "LogFilters",
    "LogPage",
    "LogStats",
    "MissingColumn",
    "ModelClass",
    "ModelResponse",
    "QualityScore",
    "RepairAction",
    "RepairOutcome",
    "RouteDecision",
    "RouteStrategy",
    "RuleViolation",
    "SchemaCompatibilityReport",
    "SemanticSignature",
    "Severity",
]

# models/quality_models.py
"""Quality scores, rule violations and repair records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import Field

from core.usage import TokenUsage

from .generation_models import ContractModel


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class RuleViolation(ContractModel):
    """A structural or content defect found by the rule checker."""

    rule_id: str
    severity: Severity
    message: str
    suggestion: str | None = None
    auto_fixable: bool = False
    # offending text and its character span in the checked output
    evidence: str | None = None
    span: tuple[int, int] | None = None
    # proposed substitute for ``evidence``; "" means delete
    replacement: str | None = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.ERROR


class RepairAction(ContractModel):
    violation_type: str
    original: str
    replacement: str
    description: str = ""


class QualityScore(ContractModel):
    overall: float
    completeness: float
    consistency: float
    coherence: float
    fluency: float
    suggestions: list[str] = Field(default_factory=list)

    @property
    def dimensions(self) -> dict[str, float]:
        return {
            "completeness": self.completeness,
            "consistency": self.consistency,
            "coherence": self.coherence,
            "fluency": self.fluency,
        }


@dataclass
class EvaluationOutcome:
    """Score, violations and the acceptance verdict for one output."""

    score: QualityScore
    violations: list[RuleViolation]
    accepted: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def blocking_violations(self) -> list[RuleViolation]:
        return [v for v in self.violations if v.is_blocking]


@dataclass
class RepairOutcome:
    text: str
    actions: list[RepairAction] = field(default_factory=list)
    unresolved: list[RuleViolation] = field(default_factory=list)
    # spend of model-assisted repairs, including ones that were discarded
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def changed(self) -> bool:
        return bool(self.actions)

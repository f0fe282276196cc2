# quality/evaluator.py
"""Multi-dimensional quality scoring and the acceptance gate."""

from __future__ import annotations

import statistics
from collections import Counter

import structlog

from config import settings
from models.generation_models import GenerationConstraints
from models.quality_models import EvaluationOutcome, QualityScore, RuleViolation
from utils.text_processing import count_words, get_text_segments, lexical_diversity

from .rule_checker import RuleChecker

logger = structlog.get_logger(__name__)

# Points removed from a dimension per violation of the given rule.
_PENALTIES: dict[str, dict[str, float]] = {
    "completeness": {"truncated_output": 25.0, "word_count_too_high": 10.0},
    "consistency": {
        "naming_inconsistency": 15.0,
        "forbidden_term": 30.0,
        "missing_required_entity": 10.0,
    },
    "coherence": {
        "meta_commentary": 25.0,
        "paragraph_too_long": 10.0,
        "repetitive_content": 15.0,
        "insufficient_paragraphs": 10.0,
    },
    "fluency": {"cliche_phrase": 5.0, "dialogue_too_high": 10.0},
}

_DIMENSION_TIPS = {
    "completeness": "Cover every required element and reach the target length",
    "consistency": "Keep names and facts consistent with the project canon",
    "coherence": "Tighten paragraph structure and remove repetition",
    "fluency": "Vary sentence length and vocabulary",
}


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


class QualityEvaluator:
    """Scores output and decides acceptance.

    The overall score is a weighted sum that favours completeness and
    consistency over fluency. Any error-severity violation rejects the
    output regardless of the score.
    """

    def __init__(
        self,
        rule_checker: RuleChecker | None = None,
        weights: dict[str, float] | None = None,
        min_acceptable: float = settings.MIN_ACCEPTABLE_QUALITY,
    ) -> None:
        self.rule_checker = rule_checker or RuleChecker()
        self.weights = weights or {
            "completeness": settings.QUALITY_WEIGHT_COMPLETENESS,
            "consistency": settings.QUALITY_WEIGHT_CONSISTENCY,
            "coherence": settings.QUALITY_WEIGHT_COHERENCE,
            "fluency": settings.QUALITY_WEIGHT_FLUENCY,
        }
        self.min_acceptable = min_acceptable

    def evaluate(
        self, text: str, constraints: GenerationConstraints | None = None
    ) -> EvaluationOutcome:
        constraints = constraints or GenerationConstraints()
        violations = self.rule_checker.check(text, constraints)
        score = self.score(text, constraints, violations)
        accepted, reasons = self.acceptance(score, violations)
        logger.debug(
            "Quality evaluated",
            overall=score.overall,
            accepted=accepted,
            violations=len(violations),
        )
        return EvaluationOutcome(
            score=score, violations=violations, accepted=accepted, reasons=reasons
        )

    def acceptance(
        self, score: QualityScore, violations: list[RuleViolation]
    ) -> tuple[bool, list[str]]:
        reasons = [
            f"{v.rule_id}: {v.message}" for v in violations if v.is_blocking
        ]
        if score.overall < self.min_acceptable:
            reasons.append(
                f"overall quality {score.overall} below minimum {self.min_acceptable}"
            )
        return not reasons, reasons

    def score(
        self,
        text: str,
        constraints: GenerationConstraints,
        violations: list[RuleViolation],
    ) -> QualityScore:
        if not text or not text.strip():
            return QualityScore(
                overall=0.0,
                completeness=0.0,
                consistency=0.0,
                coherence=0.0,
                fluency=0.0,
                suggestions=["Regenerate the passage"],
            )

        counts = Counter(v.rule_id for v in violations)
        dimensions = {
            "completeness": self._completeness(text, constraints),
            "consistency": 100.0,
            "coherence": 100.0,
            "fluency": self._fluency(text),
        }
        for dimension, penalties in _PENALTIES.items():
            for rule_id, points in penalties.items():
                dimensions[dimension] -= points * counts.get(rule_id, 0)
        dimensions = {name: round(_clamp(value), 1) for name, value in dimensions.items()}

        overall = round(
            sum(dimensions[name] * self.weights[name] for name in dimensions), 1
        )

        suggestions: list[str] = []
        for v in violations:
            if v.suggestion and v.suggestion not in suggestions:
                suggestions.append(v.suggestion)
        for name, value in dimensions.items():
            if value < 60 and _DIMENSION_TIPS[name] not in suggestions:
                suggestions.append(_DIMENSION_TIPS[name])

        return QualityScore(overall=overall, suggestions=suggestions, **dimensions)

    @staticmethod
    def _completeness(text: str, constraints: GenerationConstraints) -> float:
        value = 100.0
        word_count = count_words(text)
        if constraints.min_words and word_count < constraints.min_words:
            value = 100.0 * word_count / constraints.min_words
        if constraints.required_entities:
            lowered = text.lower()
            missing = sum(1 for e in constraints.required_entities if e.lower() not in lowered)
            value -= 40.0 * missing / len(constraints.required_entities)
        return value

    @staticmethod
    def _fluency(text: str) -> float:
        diversity = lexical_diversity(text)
        value = 60.0 + 40.0 * min(1.0, diversity / 0.6)
        lengths = [count_words(s) for s, _, _ in get_text_segments(text, "sentence")]
        lengths = [n for n in lengths if n]
        if len(lengths) >= 4:
            mean = statistics.fmean(lengths)
            if mean and statistics.pstdev(lengths) / mean < 0.2:
                value -= 10.0  # monotonous rhythm
        return value

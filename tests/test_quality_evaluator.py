import pytest

from models.generation_models import GenerationConstraints
from models.quality_models import RuleViolation, Severity
from quality.evaluator import QualityEvaluator
from quality.rule_checker import RuleChecker
from fakes import GOOD_TEXT


def test_good_prose_is_accepted_with_high_score():
    outcome = QualityEvaluator().evaluate(GOOD_TEXT)
    assert outcome.accepted
    assert outcome.score.overall >= 80
    assert outcome.reasons == []


def test_empty_text_scores_zero_and_is_rejected():
    outcome = QualityEvaluator().evaluate("")
    assert not outcome.accepted
    assert outcome.score.overall == 0.0
    assert outcome.score.suggestions == ["Regenerate the passage"]


def test_error_violation_rejects_even_with_high_score():
    evaluator = QualityEvaluator(min_acceptable=0.0)
    outcome = evaluator.evaluate(
        GOOD_TEXT, GenerationConstraints(forbidden_terms={"archive": "vault"})
    )
    assert outcome.score.overall > 60
    assert not outcome.accepted
    assert outcome.reasons[0].startswith("forbidden_term")
    assert [v.rule_id for v in outcome.blocking_violations] == ["forbidden_term"]


def test_low_score_without_errors_is_rejected():
    outcome = QualityEvaluator(min_acceptable=99.5).evaluate(GOOD_TEXT + "\n\nMara reached for the")
    assert not outcome.accepted
    assert "below minimum" in outcome.reasons[-1]


def test_overall_is_weighted_sum_of_dimensions():
    evaluator = QualityEvaluator()
    score = evaluator.evaluate(GOOD_TEXT).score
    expected = sum(
        getattr(score, name) * weight for name, weight in evaluator.weights.items()
    )
    assert score.overall == pytest.approx(expected, abs=0.1)


def test_penalties_land_in_matching_dimension():
    evaluator = QualityEvaluator()
    constraints = GenerationConstraints(character_names={"Tomas": ("Tom",)})
    baseline = evaluator.evaluate(GOOD_TEXT, constraints).score
    renamed = evaluator.evaluate(GOOD_TEXT.replace("He looked up", "Tom looked up"), constraints).score
    assert renamed.consistency == baseline.consistency - 15.0
    assert renamed.completeness == baseline.completeness


def test_missing_entities_reduce_completeness():
    outcome = QualityEvaluator().evaluate(
        GOOD_TEXT, GenerationConstraints(required_entities=("Mara", "Abbot Ferin"))
    )
    assert outcome.score.completeness == pytest.approx(80.0)
    assert not outcome.accepted


def test_custom_rule_checker_is_used():
    class StrictChecker(RuleChecker):
        def check(self, text, constraints=None):
            return [RuleViolation(rule_id="house_style", severity=Severity.ERROR, message="no")]

    outcome = QualityEvaluator(rule_checker=StrictChecker()).evaluate(GOOD_TEXT)
    assert not outcome.accepted
    assert outcome.reasons == ["house_style: no"]

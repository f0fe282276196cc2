import pytest

from core.errors import ErrorKind, ModelCallError
from models.generation_models import GenerationConstraints
from models.quality_models import RuleViolation, Severity
from quality.repair_engine import RepairEngine
from quality.rule_checker import RuleChecker
from fakes import GOOD_TEXT, ScriptedModelClient


@pytest.mark.asyncio
async def test_forbidden_term_is_replaced_preserving_case():
    constraints = GenerationConstraints(forbidden_terms={"inside": "within"})
    violations = RuleChecker().check(GOOD_TEXT, constraints)
    outcome = await RepairEngine().repair(GOOD_TEXT, violations, constraints)

    assert "Within the archive" in outcome.text
    assert "inside a bundle" not in outcome.text
    action = next(a for a in outcome.actions if a.violation_type == "forbidden_term")
    assert action.description == "replaced 2 occurrence(s)"


@pytest.mark.asyncio
async def test_meta_commentary_is_removed():
    text = GOOD_TEXT + "\n\n[Author note: tighten the ending]"
    violations = RuleChecker().check(text)
    outcome = await RepairEngine().repair(text, violations)

    assert "Author note" not in outcome.text
    assert outcome.text.endswith("stained with wax.")
    assert "meta_commentary" not in {v.rule_id for v in RuleChecker().check(outcome.text)}


@pytest.mark.asyncio
async def test_long_paragraph_is_split():
    paragraph = " ".join(["The rain kept falling on the abbey roof."] * 2 + [
        "Mara counted the drips in the bucket.",
        "Tomas said nothing at all.",
    ])
    violation = RuleViolation(
        rule_id="paragraph_too_long",
        severity=Severity.WARNING,
        message="too long",
        auto_fixable=True,
        evidence=paragraph,
    )
    engine = RepairEngine(max_paragraph_chars=80)
    outcome = await engine.repair(paragraph, [violation])

    assert outcome.changed
    assert all(len(p) <= 80 for p in outcome.text.split("\n\n"))
    assert outcome.actions[0].description.startswith("split into")


@pytest.mark.asyncio
async def test_missing_entity_uses_model_and_checks_similarity():
    revised = GOOD_TEXT.replace("Tomas was", "Tomas and Abbot Ferin were")
    client = ScriptedModelClient({"Qwen3-4B": [revised]})
    engine = RepairEngine(client, repair_model="Qwen3-4B")
    violation = RuleViolation(
        rule_id="missing_required_entity",
        severity=Severity.ERROR,
        message="missing",
        evidence="Abbot Ferin",
    )

    assert engine.can_attempt(violation)
    outcome = await engine.repair(GOOD_TEXT, [violation])
    assert "Abbot Ferin" in outcome.text
    assert client.models_called == ["Qwen3-4B"]
    assert "Abbot Ferin" in client.calls[0][1]
    assert outcome.usage.total_tokens == 30
    assert outcome.usage.cost == pytest.approx(0.01)


@pytest.mark.asyncio
async def test_entity_rewrite_that_drifts_too_far_is_rejected():
    client = ScriptedModelClient({"Qwen3-4B": ["Abbot Ferin slept."]})
    engine = RepairEngine(client, repair_model="Qwen3-4B", min_similarity=60)
    violation = RuleViolation(
        rule_id="missing_required_entity",
        severity=Severity.ERROR,
        message="missing",
        evidence="Abbot Ferin",
    )
    outcome = await engine.repair(GOOD_TEXT, [violation])
    assert outcome.text == GOOD_TEXT
    assert outcome.unresolved == [violation]
    # the discarded rewrite still cost a call
    assert outcome.usage.total_tokens == 30


@pytest.mark.asyncio
async def test_failed_fix_does_not_stop_others():
    client = ScriptedModelClient(
        {"Qwen3-4B": [ModelCallError(ErrorKind.TIMEOUT, "slow", "Qwen3-4B")]}
    )
    engine = RepairEngine(client, repair_model="Qwen3-4B")
    constraints = GenerationConstraints(
        required_entities=("Abbot Ferin",), forbidden_terms={"candlelight": "lamplight"}
    )
    violations = RuleChecker().check(GOOD_TEXT, constraints)
    outcome = await engine.repair(GOOD_TEXT, violations, constraints)

    assert "lamplight" in outcome.text
    assert "missing_required_entity" in [v.rule_id for v in outcome.unresolved]


@pytest.mark.asyncio
async def test_without_model_client_entities_are_not_attempted():
    violation = RuleViolation(
        rule_id="missing_required_entity", severity=Severity.ERROR, message="m", evidence="X"
    )
    assert not RepairEngine().can_attempt(violation)

from models.generation_models import GenerationConstraints
from models.quality_models import Severity
from quality.cliche_patterns import find_cliches, tidy_after_removal
from quality.rule_checker import RuleChecker, rule_score
from fakes import GOOD_TEXT


def rules(violations):
    return {v.rule_id for v in violations}


def test_clean_prose_has_no_blocking_violations():
    violations = RuleChecker().check(GOOD_TEXT)
    assert not [v for v in violations if v.is_blocking]
    assert "insufficient_paragraphs" not in rules(violations)


def test_empty_output_is_single_error():
    violations = RuleChecker().check("   \n")
    assert [v.rule_id for v in violations] == ["empty_output"]
    assert violations[0].severity == Severity.ERROR


def test_meta_commentary_is_blocking_and_fixable():
    text = GOOD_TEXT + "\n\n(Author's note: expand this later.)"
    violations = [v for v in RuleChecker().check(text) if v.rule_id == "meta_commentary"]
    assert len(violations) == 1
    assert violations[0].is_blocking
    assert violations[0].auto_fixable
    assert violations[0].replacement == ""


def test_forbidden_terms_and_required_entities():
    constraints = GenerationConstraints(
        forbidden_terms={"candlelight": "lamplight"},
        required_entities=("Abbot Ferin",),
    )
    violations = RuleChecker().check(GOOD_TEXT, constraints)
    by_rule = {v.rule_id: v for v in violations}

    assert by_rule["forbidden_term"].replacement == "lamplight"
    assert by_rule["forbidden_term"].is_blocking
    assert by_rule["missing_required_entity"].evidence == "Abbot Ferin"
    assert not by_rule["missing_required_entity"].auto_fixable


def test_word_count_bounds():
    checker = RuleChecker()
    low = checker.check(GOOD_TEXT, GenerationConstraints(min_words=500))
    high = checker.check(GOOD_TEXT, GenerationConstraints(max_words=20))
    assert "word_count_too_low" in rules(low)
    assert "word_count_too_high" in rules(high)


def test_structure_rules():
    checker = RuleChecker(min_paragraphs=3, max_paragraph_chars=120)
    violations = checker.check("One short paragraph that ends cleanly.")
    assert "insufficient_paragraphs" in rules(violations)

    long_paragraph = checker.check(GOOD_TEXT)
    assert "paragraph_too_long" in rules(long_paragraph)


def test_dialogue_ratio_and_truncation():
    chatter = '"Where is it?" "Gone." "Then we look again." "All night?" "All night."'
    assert "dialogue_too_high" in rules(RuleChecker().check(chatter))

    cut_off = GOOD_TEXT + "\n\nMara reached for the"
    assert "truncated_output" in rules(RuleChecker().check(cut_off))


def test_duplicate_sentences_are_flagged():
    sentence = "The lanterns along the wall had guttered out hours ago."
    text = GOOD_TEXT + "\n\n" + sentence
    duplicates = [v for v in RuleChecker().check(text) if v.rule_id == "repetitive_content"]
    assert duplicates
    assert duplicates[0].evidence == sentence


def test_naming_inconsistency_is_case_sensitive():
    constraints = GenerationConstraints(character_names={"Tomas": ("Tom", "tomas")})
    text = GOOD_TEXT.replace("He looked up", "Tom looked up")
    found = [v for v in RuleChecker().check(text, constraints) if v.rule_id == "naming_inconsistency"]
    assert [v.evidence for v in found] == ["Tom"]
    assert found[0].replacement == "Tomas"


def test_cliche_detection_and_tidy():
    text = "Needless to say, the gate was locked. In the silence that followed, Mara waited."
    matches = find_cliches(text)
    assert [m.phrase for m in matches] == ["needless to say", "in the silence that followed"]
    assert tidy_after_removal(" , the gate was locked.") == "the gate was locked."


def test_rule_score():
    violations = RuleChecker().check("")
    assert rule_score(violations) == 80.0
    assert rule_score([]) == 100.0

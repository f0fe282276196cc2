# quality/rule_checker.py
"""Deterministic structural and content rules for generated prose."""

from __future__ import annotations

import re

import structlog
from rapidfuzz import fuzz

from config import settings
from models.generation_models import GenerationConstraints
from models.quality_models import RuleViolation, Severity
from utils.text_processing import (
    count_words,
    dialogue_ratio,
    get_text_segments,
    looks_truncated,
    repeated_ngrams,
)

from .cliche_patterns import find_cliches

logger = structlog.get_logger(__name__)

META_COMMENTARY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\((?:author'?s? )?note:[^)]*\)", re.IGNORECASE),
    re.compile(r"\[(?:author'?s? )?note:[^\]]*\]", re.IGNORECASE),
    re.compile(r"\[(?:insert|tbd|todo|placeholder)[^\]]*\]", re.IGNORECASE),
    re.compile(r"^\s*(?:word count|note to (?:the )?(?:editor|reader))\s*:.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\bas an ai(?: language model)?,?[^.!?\n]*[.!?]?", re.IGNORECASE),
    re.compile(r"^\s*(?:here is|here's) (?:the|your) (?:scene|chapter|story|draft)[^\n]*:\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^\s*i hope (?:this|you)[^\n]*$", re.IGNORECASE | re.MULTILINE),
)

# Rules that carry enough information to be fixed without a model call.
DETERMINISTIC_FIXES = frozenset(
    {
        "meta_commentary",
        "forbidden_term",
        "paragraph_too_long",
        "repetitive_content",
        "naming_inconsistency",
        "cliche_phrase",
    }
)

_DUPLICATE_SENTENCE_RATIO = 90.0
_MIN_DUPLICATE_SENTENCE_CHARS = 20


def rule_score(violations: list[RuleViolation]) -> float:
    """100 minus 20 per error and 10 per warning, floored at zero."""
    errors = sum(1 for v in violations if v.severity == Severity.ERROR)
    warnings = len(violations) - errors
    return float(max(0, 100 - errors * 20 - warnings * 10))


def _term_pattern(term: str, ignore_case: bool = True) -> re.Pattern[str]:
    flags = re.IGNORECASE if ignore_case else 0
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", flags)


class RuleChecker:
    def __init__(
        self,
        min_paragraphs: int = settings.MIN_PARAGRAPHS,
        max_paragraph_chars: int = settings.MAX_PARAGRAPH_CHARS,
        max_dialogue_ratio: float = settings.MAX_DIALOGUE_RATIO,
        ngram_size: int = settings.REPETITION_NGRAM_SIZE,
        ngram_threshold: int = settings.REPETITION_THRESHOLD,
        cliche_threshold: float = settings.CLICHE_SIMILARITY_THRESHOLD,
    ) -> None:
        self.min_paragraphs = min_paragraphs
        self.max_paragraph_chars = max_paragraph_chars
        self.max_dialogue_ratio = max_dialogue_ratio
        self.ngram_size = ngram_size
        self.ngram_threshold = ngram_threshold
        self.cliche_threshold = cliche_threshold

    def check(
        self, text: str, constraints: GenerationConstraints | None = None
    ) -> list[RuleViolation]:
        """Run every rule against ``text``."""
        constraints = constraints or GenerationConstraints()
        if not text or not text.strip():
            return [
                RuleViolation(
                    rule_id="empty_output",
                    severity=Severity.ERROR,
                    message="Model returned no usable text",
                    suggestion="Regenerate the passage",
                )
            ]

        violations: list[RuleViolation] = []
        violations.extend(self._check_meta_commentary(text))
        violations.extend(self._check_forbidden_terms(text, constraints))
        violations.extend(self._check_required_entities(text, constraints))
        violations.extend(self._check_word_count(text, constraints))
        violations.extend(self._check_dialogue(text))
        violations.extend(self._check_paragraphs(text, constraints))
        violations.extend(self._check_repetition(text))
        violations.extend(self._check_naming(text, constraints))
        violations.extend(self._check_truncation(text))
        violations.extend(self._check_cliches(text))

        if violations:
            logger.debug(
                "Rule check found violations",
                errors=sum(1 for v in violations if v.is_blocking),
                warnings=sum(1 for v in violations if not v.is_blocking),
                rules=sorted({v.rule_id for v in violations}),
            )
        return violations

    def _check_meta_commentary(self, text: str) -> list[RuleViolation]:
        found: list[RuleViolation] = []
        seen: set[tuple[int, int]] = set()
        for pattern in META_COMMENTARY_PATTERNS:
            for match in pattern.finditer(text):
                if not match.group(0).strip() or match.span() in seen:
                    continue
                seen.add(match.span())
                found.append(
                    RuleViolation(
                        rule_id="meta_commentary",
                        severity=Severity.ERROR,
                        message="Author or assistant commentary inside the prose",
                        suggestion=f"Remove: {match.group(0).strip()[:80]}",
                        auto_fixable=True,
                        evidence=match.group(0),
                        span=match.span(),
                        replacement="",
                    )
                )
        return found

    def _check_forbidden_terms(
        self, text: str, constraints: GenerationConstraints
    ) -> list[RuleViolation]:
        found = []
        for term, replacement in constraints.forbidden_terms.items():
            match = _term_pattern(term).search(text)
            if match is None:
                continue
            found.append(
                RuleViolation(
                    rule_id="forbidden_term",
                    severity=Severity.ERROR,
                    message=f"Forbidden term '{term}' appears in the output",
                    suggestion=(
                        f"Replace '{term}' with '{replacement}'" if replacement else f"Remove '{term}'"
                    ),
                    auto_fixable=True,
                    evidence=term,
                    span=match.span(),
                    replacement=replacement or "",
                )
            )
        return found

    def _check_required_entities(
        self, text: str, constraints: GenerationConstraints
    ) -> list[RuleViolation]:
        return [
            RuleViolation(
                rule_id="missing_required_entity",
                severity=Severity.ERROR,
                message=f"Required entity '{entity}' is never mentioned",
                suggestion=f"Introduce '{entity}' into the scene",
                evidence=entity,
            )
            for entity in constraints.required_entities
            if not _term_pattern(entity).search(text)
        ]

    def _check_word_count(
        self, text: str, constraints: GenerationConstraints
    ) -> list[RuleViolation]:
        word_count = count_words(text)
        if constraints.min_words is not None and word_count < constraints.min_words:
            return [
                RuleViolation(
                    rule_id="word_count_too_low",
                    severity=Severity.WARNING,
                    message=f"Word count too low ({word_count}/{constraints.min_words})",
                    suggestion="Add more detail and description",
                )
            ]
        if constraints.max_words is not None and word_count > constraints.max_words:
            return [
                RuleViolation(
                    rule_id="word_count_too_high",
                    severity=Severity.WARNING,
                    message=f"Word count too high ({word_count}/{constraints.max_words})",
                    suggestion="Trim redundant passages",
                )
            ]
        return []

    def _check_dialogue(self, text: str) -> list[RuleViolation]:
        ratio = dialogue_ratio(text)
        if ratio <= self.max_dialogue_ratio:
            return []
        return [
            RuleViolation(
                rule_id="dialogue_too_high",
                severity=Severity.WARNING,
                message=f"Dialogue ratio too high ({ratio:.1%})",
                suggestion="Add scene description and interiority",
            )
        ]

    def _check_paragraphs(
        self, text: str, constraints: GenerationConstraints
    ) -> list[RuleViolation]:
        paragraphs = get_text_segments(text, "paragraph")
        found: list[RuleViolation] = []
        if len(paragraphs) < self.min_paragraphs:
            found.append(
                RuleViolation(
                    rule_id="insufficient_paragraphs",
                    severity=Severity.WARNING,
                    message=f"Only {len(paragraphs)} paragraph(s); at least {self.min_paragraphs} expected",
                    suggestion="Break the passage into paragraphs of three to five sentences",
                )
            )
        limit = constraints.max_paragraph_chars or self.max_paragraph_chars
        for para_text, start, end in paragraphs:
            if len(para_text) > limit:
                found.append(
                    RuleViolation(
                        rule_id="paragraph_too_long",
                        severity=Severity.WARNING,
                        message=f"Paragraph of {len(para_text)} characters exceeds {limit}",
                        suggestion="Split the paragraph at a natural sentence break",
                        auto_fixable=True,
                        evidence=para_text,
                        span=(start, end),
                    )
                )
        return found

    def _check_repetition(self, text: str) -> list[RuleViolation]:
        found: list[RuleViolation] = []
        sentences = [
            seg for seg in get_text_segments(text, "sentence")
            if len(seg[0]) >= _MIN_DUPLICATE_SENTENCE_CHARS
        ]
        duplicates: set[int] = set()
        for i, (first, _, _) in enumerate(sentences):
            if i in duplicates:
                continue
            for j in range(i + 1, len(sentences)):
                if j in duplicates:
                    continue
                candidate, start, end = sentences[j]
                if fuzz.ratio(first.lower(), candidate.lower()) >= _DUPLICATE_SENTENCE_RATIO:
                    duplicates.add(j)
                    found.append(
                        RuleViolation(
                            rule_id="repetitive_content",
                            severity=Severity.WARNING,
                            message="Sentence repeats an earlier sentence",
                            suggestion=f"Drop or rephrase: {candidate[:60]}",
                            auto_fixable=True,
                            evidence=candidate,
                            span=(start, end),
                            replacement="",
                        )
                    )

        overused = repeated_ngrams(text, self.ngram_size, self.ngram_threshold)
        if overused:
            phrases = sorted(overused, key=overused.get, reverse=True)[:3]
            found.append(
                RuleViolation(
                    rule_id="repetitive_content",
                    severity=Severity.WARNING,
                    message="Overused phrases: " + "; ".join(f'"{p}"' for p in phrases),
                    suggestion="Vary the wording of repeated phrases",
                )
            )
        return found

    def _check_naming(
        self, text: str, constraints: GenerationConstraints
    ) -> list[RuleViolation]:
        found = []
        for canonical, variants in constraints.character_names.items():
            for variant in variants:
                if variant == canonical:
                    continue
                match = _term_pattern(variant, ignore_case=False).search(text)
                if match is None:
                    continue
                found.append(
                    RuleViolation(
                        rule_id="naming_inconsistency",
                        severity=Severity.WARNING,
                        message=f"Character '{canonical}' is also called '{variant}'",
                        suggestion=f"Use '{canonical}' consistently",
                        auto_fixable=True,
                        evidence=variant,
                        span=match.span(),
                        replacement=canonical,
                    )
                )
        return found

    def _check_truncation(self, text: str) -> list[RuleViolation]:
        if not looks_truncated(text):
            return []
        return [
            RuleViolation(
                rule_id="truncated_output",
                severity=Severity.WARNING,
                message="Output appears to stop mid-sentence",
                suggestion="Raise the token limit or regenerate the ending",
                evidence=text.rstrip()[-40:],
            )
        ]

    def _check_cliches(self, text: str) -> list[RuleViolation]:
        return [
            RuleViolation(
                rule_id="cliche_phrase",
                severity=Severity.WARNING,
                message=f"Stock phrase: '{match.matched_text}'",
                suggestion=(
                    f"Replace with '{match.replacement}'" if match.replacement else "Delete the filler phrase"
                ),
                auto_fixable=True,
                evidence=match.matched_text,
                span=(match.start, match.end),
                replacement=match.replacement or "",
            )
            for match in find_cliches(text, self.cliche_threshold)
        ]

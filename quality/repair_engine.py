# quality/repair_engine.py
"""Targeted fixes for rule violations before final acceptance."""

from __future__ import annotations

import re

import structlog
from rapidfuzz import fuzz

from config import settings
from core.errors import ModelCallError
from core.llm_interface import ModelClient
from core.usage import TokenUsage
from models.generation_models import GenerationConstraints
from models.quality_models import RepairAction, RepairOutcome, RuleViolation, Severity
from utils.text_processing import get_text_segments

from .cliche_patterns import match_case, tidy_after_removal

logger = structlog.get_logger(__name__)

ENTITY_REPAIR_PROMPT = """You are revising a passage of fiction.
Rewrite the passage so that it naturally mentions "{entity}".
Change as little as possible. Keep the voice, tense and paragraph breaks.
Return only the revised passage, with no commentary.

PASSAGE:
{text}
"""

_SEVERITY_ORDER = {Severity.ERROR: 0, Severity.WARNING: 1}


def _replace_term(text: str, term: str, replacement: str, ignore_case: bool) -> tuple[str, int]:
    flags = re.IGNORECASE if ignore_case else 0
    pattern = re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", flags)
    return pattern.subn(lambda m: match_case(m.group(0), replacement), text)


def _split_paragraph(paragraph: str, limit: int) -> list[str]:
    """Split at sentence boundaries into chunks no longer than ``limit`` where possible."""
    sentences = [s for s, _, _ in get_text_segments(paragraph, "sentence")]
    if len(sentences) < 2:
        return [paragraph]
    chunks: list[str] = []
    current: list[str] = []
    for sentence in sentences:
        candidate = " ".join(current + [sentence])
        if current and len(candidate) > limit:
            chunks.append(" ".join(current))
            current = [sentence]
        else:
            current.append(sentence)
    if current:
        chunks.append(" ".join(current))
    if len(chunks) == 1:
        # one long run of short sentences: split at the midpoint
        middle = len(sentences) // 2
        chunks = [" ".join(sentences[:middle]), " ".join(sentences[middle:])]
    return chunks


class RepairEngine:
    """Applies deterministic fixes and, when a model client is available,
    model-assisted fixes for violations that need new content."""

    def __init__(
        self,
        model_client: ModelClient | None = None,
        repair_model: str | None = None,
        min_similarity: float = settings.REPAIR_MIN_SIMILARITY,
        max_paragraph_chars: int = settings.MAX_PARAGRAPH_CHARS,
    ) -> None:
        self.model_client = model_client
        self.repair_model = repair_model or settings.REPAIR_MODEL
        self.min_similarity = min_similarity
        self.max_paragraph_chars = max_paragraph_chars

    def can_attempt(self, violation: RuleViolation) -> bool:
        if violation.rule_id == "missing_required_entity":
            return self.model_client is not None
        return violation.auto_fixable

    async def repair(
        self,
        text: str,
        violations: list[RuleViolation],
        constraints: GenerationConstraints | None = None,
    ) -> RepairOutcome:
        """Attempt each fix independently; a failed fix does not stop the rest."""
        constraints = constraints or GenerationConstraints()
        outcome = RepairOutcome(text=text)
        ordered = sorted(violations, key=lambda v: _SEVERITY_ORDER.get(v.severity, 2))
        for violation in ordered:
            if not self.can_attempt(violation):
                outcome.unresolved.append(violation)
                continue
            try:
                result = await self._repair_one(outcome, violation, constraints)
            except ModelCallError as exc:
                logger.warning(
                    "Model-assisted repair failed",
                    rule_id=violation.rule_id,
                    kind=exc.kind.value,
                    error=exc.message,
                )
                result = None
            if result is None:
                outcome.unresolved.append(violation)
                continue
            outcome.text, action = result
            outcome.actions.append(action)

        if outcome.actions:
            logger.info(
                "Repairs applied",
                applied=len(outcome.actions),
                unresolved=len(outcome.unresolved),
            )
        return outcome

    async def _repair_one(
        self,
        outcome: RepairOutcome,
        violation: RuleViolation,
        constraints: GenerationConstraints,
    ) -> tuple[str, RepairAction] | None:
        text = outcome.text
        rule = violation.rule_id
        if rule == "missing_required_entity":
            return await self._add_entity(text, violation, outcome.usage)
        if rule == "paragraph_too_long":
            return self._split_long_paragraph(text, violation, constraints)
        if rule == "forbidden_term":
            return self._substitute_term(text, violation, ignore_case=True)
        if rule == "naming_inconsistency":
            return self._substitute_term(text, violation, ignore_case=False)
        if rule in ("meta_commentary", "cliche_phrase", "repetitive_content"):
            return self._substitute_span(text, violation, last=rule == "repetitive_content")
        return None

    def _substitute_term(
        self, text: str, violation: RuleViolation, ignore_case: bool
    ) -> tuple[str, RepairAction] | None:
        if not violation.evidence or violation.replacement is None:
            return None
        updated, count = _replace_term(
            text, violation.evidence, violation.replacement, ignore_case
        )
        if not count:
            return None
        if not violation.replacement:
            updated = tidy_after_removal(updated)
        return updated, RepairAction(
            violation_type=violation.rule_id,
            original=violation.evidence,
            replacement=violation.replacement,
            description=f"replaced {count} occurrence(s)",
        )

    def _substitute_span(
        self, text: str, violation: RuleViolation, last: bool = False
    ) -> tuple[str, RepairAction] | None:
        evidence = violation.evidence
        if not evidence:
            return None
        index = text.rfind(evidence) if last else text.find(evidence)
        if index < 0:
            return None
        replacement = match_case(evidence, violation.replacement or "")
        updated = text[:index] + replacement + text[index + len(evidence):]
        if not replacement:
            updated = tidy_after_removal(updated)
        return updated, RepairAction(
            violation_type=violation.rule_id,
            original=evidence,
            replacement=replacement,
        )

    def _split_long_paragraph(
        self,
        text: str,
        violation: RuleViolation,
        constraints: GenerationConstraints,
    ) -> tuple[str, RepairAction] | None:
        paragraph = violation.evidence
        if not paragraph or paragraph not in text:
            return None
        limit = constraints.max_paragraph_chars or self.max_paragraph_chars
        chunks = _split_paragraph(paragraph, limit)
        if len(chunks) < 2:
            return None
        replacement = "\n\n".join(chunks)
        return text.replace(paragraph, replacement, 1), RepairAction(
            violation_type=violation.rule_id,
            original=paragraph,
            replacement=replacement,
            description=f"split into {len(chunks)} paragraphs",
        )

    async def _add_entity(
        self, text: str, violation: RuleViolation, usage: TokenUsage
    ) -> tuple[str, RepairAction] | None:
        entity = violation.evidence
        if not entity or self.model_client is None:
            return None
        response = await self.model_client.generate(
            self.repair_model,
            ENTITY_REPAIR_PROMPT.format(entity=entity, text=text),
            {"temperature": settings.TEMPERATURE_REPAIR},
        )
        usage.add(response.usage)
        revised = response.text.strip()
        if entity.lower() not in revised.lower():
            logger.info("Entity repair did not introduce entity", entity=entity)
            return None
        similarity = fuzz.ratio(text, revised)
        if similarity < self.min_similarity:
            logger.info(
                "Entity repair rewrote too much; leaving for manual review",
                entity=entity,
                similarity=round(similarity, 1),
            )
            return None
        return revised, RepairAction(
            violation_type=violation.rule_id,
            original=text,
            replacement=revised,
            description=f"introduced '{entity}' (similarity {similarity:.0f})",
        )

# quality/cliche_patterns.py
"""Stock LLM narrative phrases ("GPT-isms") and fuzzy detection."""

from __future__ import annotations

import re
from dataclasses import dataclass

from rapidfuzz import fuzz

from utils.text_processing import get_text_segments

# Phrase -> deterministic replacement. ``None`` means the phrase is filler
# and is deleted outright.
CLICHE_PATTERNS: dict[str, str | None] = {
    "in the silence that followed": "in the hush that came after",
    "as the sun began to set": "as twilight bled across the sky",
    "the air was thick with": "the air hung heavy with",
    "a sense of dread washed over": "dread coiled in the gut of",
    "a single tear trickled down": "a hot tear escaped down",
    "let out a breath they didn't realize they were holding": "exhaled in a shuddering rush",
    "let out a breath she didn't know she was holding": "exhaled in a shuddering rush",
    "let out a breath he didn't know he was holding": "exhaled in a shuddering rush",
    "couldn't help but feel": "felt",
    "couldn't help but wonder": "wondered",
    "stood there for a long moment": "remained motionless",
    "the world seemed to hold its breath": "an expectant hush fell",
    "it was a sight to behold": None,
    "needless to say": None,
    "to say the least": None,
    "little did they know": None,
    "it was a harsh reminder that": "it reminded them that",
    "sent shivers down her spine": "made her skin prickle",
    "sent shivers down his spine": "made his skin prickle",
    "a testament to": "proof of",
    "tapestry of": "weave of",
    "eyes sparkling with mischief": "eyes bright with mischief",
}

DEFAULT_SIMILARITY_THRESHOLD = 90.0


@dataclass(frozen=True)
class ClicheMatch:
    phrase: str
    matched_text: str
    start: int
    end: int
    score: float
    replacement: str | None


def _widen_to_word_boundaries(text: str, start: int, end: int) -> tuple[int, int]:
    while start > 0 and text[start - 1].isalnum():
        start -= 1
    while end < len(text) and text[end].isalnum():
        end += 1
    return start, end


def find_cliches(
    text: str, threshold: float = DEFAULT_SIMILARITY_THRESHOLD
) -> list[ClicheMatch]:
    """Return the best-scoring cliché per sentence, in document order."""
    matches: list[ClicheMatch] = []
    for sentence, sent_start, _ in get_text_segments(text, "sentence"):
        lowered = sentence.lower()
        best: ClicheMatch | None = None
        for phrase, replacement in CLICHE_PATTERNS.items():
            alignment = fuzz.partial_ratio_alignment(phrase, lowered, score_cutoff=threshold)
            if alignment is None:
                continue
            matched_len = alignment.dest_end - alignment.dest_start
            # partial_ratio can align a short phrase against a much longer span
            if matched_len > len(phrase) + 10:
                continue
            start, end = _widen_to_word_boundaries(
                sentence, alignment.dest_start, alignment.dest_end
            )
            if best is None or alignment.score > best.score or (
                alignment.score == best.score and end - start > best.end - best.start
            ):
                best = ClicheMatch(
                    phrase=phrase,
                    matched_text=sentence[start:end],
                    start=sent_start + start,
                    end=sent_start + end,
                    score=alignment.score,
                    replacement=replacement,
                )
        if best is not None:
            matches.append(best)
    return matches


def match_case(original: str, replacement: str) -> str:
    """Capitalise ``replacement`` when ``original`` starts a sentence."""
    if replacement and original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def tidy_after_removal(text: str) -> str:
    """Clean up stray commas and doubled spaces left by deleting a phrase."""
    text = re.sub(r"(?m)(^|(?<=[.!?] ))[ \t]*,[ \t]*", r"\1", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"[ \t]+([,.!?;:])", r"\1", text)
    text = re.sub(r"(?m)^[ \t]+|[ \t]+$", "", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()

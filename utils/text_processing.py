# utils/text_processing.py
"""Text segmentation and measurement helpers used by the quality gate."""

from __future__ import annotations

import re
from collections import Counter

import structlog

logger = structlog.get_logger(__name__)

_WORD_RE = re.compile(r"\b[\w'-]+\b", re.UNICODE)
_SENTENCE_RE = re.compile(r"([^\.!?]+(?:[\.!?]+[\"'”’]?|$))")
_DIALOGUE_RE = re.compile(r"[\"“]([^\"”]*)[\"”]")


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace and trim the ends."""
    return re.sub(r"\s+", " ", text).strip()


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text))


def words(text: str) -> list[str]:
    return [w.lower() for w in _WORD_RE.findall(text)]


def get_text_segments(
    text: str, segment_level: str = "paragraph"
) -> list[tuple[str, int, int]]:
    """Segment text into paragraphs or sentences with offsets."""
    segments: list[tuple[str, int, int]] = []

    if not text.strip():
        return segments

    if segment_level == "paragraph":
        current_paragraph_lines: list[str] = []
        current_paragraph_start_char = -1

        for line_match in re.finditer(r"([^\r\n]*(?:\r\n|\r|\n)?)", text):
            line_text = line_match.group(0)
            if not line_text:
                continue
            if line_text.strip():
                if not current_paragraph_lines:
                    current_paragraph_start_char = line_match.start()
                current_paragraph_lines.append(line_text)
            elif current_paragraph_lines:
                full_para_text = "".join(current_paragraph_lines)
                segments.append(
                    (
                        full_para_text.strip(),
                        current_paragraph_start_char,
                        current_paragraph_start_char + len(full_para_text.rstrip()),
                    )
                )
                current_paragraph_lines = []

        if current_paragraph_lines:
            full_para_text = "".join(current_paragraph_lines)
            segments.append(
                (
                    full_para_text.strip(),
                    current_paragraph_start_char,
                    current_paragraph_start_char + len(full_para_text.rstrip()),
                )
            )

    elif segment_level == "sentence":
        for match in _SENTENCE_RE.finditer(text):
            sentence = match.group(0)
            stripped = sentence.strip()
            if not stripped:
                continue
            start = match.start() + (len(sentence) - len(sentence.lstrip()))
            segments.append((stripped, start, start + len(stripped)))
    else:
        raise ValueError(f"Unknown segment level: {segment_level}")

    return segments


def dialogue_ratio(text: str) -> float:
    """Share of characters (excluding whitespace) that sit inside quotation marks."""
    total = len(re.sub(r"\s", "", text))
    if not total:
        return 0.0
    quoted = sum(len(re.sub(r"\s", "", m.group(1))) for m in _DIALOGUE_RE.finditer(text))
    return quoted / total


def repeated_ngrams(text: str, n: int, threshold: int) -> dict[str, int]:
    """Return n-gram phrases occurring at least ``threshold`` times."""
    tokens = words(text)
    counts: Counter[tuple[str, ...]] = Counter(
        tuple(tokens[i : i + n]) for i in range(len(tokens) - n + 1)
    )
    return {" ".join(gram): count for gram, count in counts.items() if count >= threshold}


def lexical_diversity(text: str) -> float:
    tokens = words(text)
    if not tokens:
        return 0.0
    return len(set(tokens)) / len(tokens)


def looks_truncated(text: str) -> bool:
    """True when the final character is not a sentence terminator."""
    stripped = text.rstrip()
    if not stripped:
        return False
    return stripped[-1] not in ".!?\"'”’)*…—-"

# utils/__init__.py
"""General utility functions for the orchestration layer."""

from __future__ import annotations

from .logging import setup_logging
from .similarity import best_match, numpy_cosine_similarity, unit_normalize
from .text_processing import (
    count_words,
    dialogue_ratio,
    get_text_segments,
    lexical_diversity,
    looks_truncated,
    normalize_whitespace,
    repeated_ngrams,
    words,
)

__all__ = [
    "best_match",
    "count_words",
    "dialogue_ratio",
    "get_text_segments",
    "lexical_diversity",
    "looks_truncated",
    "normalize_whitespace",
    "numpy_cosine_similarity",
    "repeated_ngrams",
    "setup_logging",
    "unit_normalize",
    "words",
]

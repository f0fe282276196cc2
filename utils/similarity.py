# utils/similarity.py
import structlog

import numpy as np

logger = structlog.get_logger(__name__)


def numpy_cosine_similarity(vec1: np.ndarray | None, vec2: np.ndarray | None) -> float:
    """Calculate cosine similarity between two numpy vectors."""
    if vec1 is None or vec2 is None:
        return 0.0
    try:
        v1 = np.asarray(vec1, dtype=np.float32).flatten()
        v2 = np.asarray(vec2, dtype=np.float32).flatten()
    except ValueError as e:
        logger.warning("Cosine similarity: could not convert input to numpy array", error=str(e))
        return 0.0
    if v1.shape != v2.shape:
        logger.warning("Cosine similarity: shape mismatch", left=v1.shape, right=v2.shape)
        return 0.0
    if v1.size == 0:
        return 0.0
    norm_v1 = np.linalg.norm(v1)
    norm_v2 = np.linalg.norm(v2)
    if norm_v1 == 0.0 or norm_v2 == 0.0:
        return 0.0
    similarity = np.dot(v1, v2) / (norm_v1 * norm_v2)
    return float(np.clip(similarity, -1.0, 1.0))


def unit_normalize(vec: np.ndarray) -> np.ndarray:
    """Return ``vec`` scaled to unit length (zero vectors are returned unchanged)."""
    v = np.asarray(vec, dtype=np.float32).flatten()
    norm = np.linalg.norm(v)
    if norm == 0.0:
        return v
    return v / norm


def best_match(
    query: np.ndarray, candidates: list[np.ndarray]
) -> tuple[int, float] | None:
    """Index and similarity of the candidate closest to ``query``."""
    best: tuple[int, float] | None = None
    for idx, candidate in enumerate(candidates):
        similarity = numpy_cosine_similarity(query, candidate)
        if best is None or similarity > best[1]:
            best = (idx, similarity)
    return best

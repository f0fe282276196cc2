# caching/fingerprinter.py
"""Derive cache identity keys from a generation request."""

from __future__ import annotations

import hashlib
import json
import re

import numpy as np
import structlog

from core.errors import EmbeddingUnavailableError, ErrorKind
from core.llm_interface import ModelClient
from models.generation_models import FingerprintSet, GenerationRequest, SemanticSignature
from utils.similarity import unit_normalize
from utils.text_processing import normalize_whitespace

logger = structlog.get_logger(__name__)

# Rounding applied before hashing a semantic vector so float noise from the
# provider does not change the index key.
_SEMANTIC_HASH_DECIMALS = 4


def _digest(payload: object) -> str:
    encoded = json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def exact_hash(request: GenerationRequest) -> str:
    """Content digest over the rendered prompt and model parameters."""
    return _digest({"prompt": request.rendered_prompt, "parameters": request.parameters})


def mask_variables(prompt: str, variables: dict[str, str]) -> str:
    """Replace filled-in variable values with ``{{name}}`` placeholders."""
    masked = prompt
    # Longest values first so a value that contains another is masked whole.
    for name, value in sorted(variables.items(), key=lambda kv: len(kv[1]), reverse=True):
        if value:
            masked = masked.replace(value, "{{" + name + "}}")
    return masked


def template_hash(request: GenerationRequest) -> str:
    """Digest over template identity and prompt shape, ignoring variable fill-ins."""
    shape = normalize_whitespace(
        mask_variables(request.rendered_prompt, request.template_variables)
    )
    shape = re.sub(r"\d+", "#", shape)
    return _digest(
        {
            "template_id": request.template_id,
            "template_version": request.template_version,
            "variables": sorted(request.template_variables),
            "shape": shape,
        }
    )


def semantic_hash(vector: np.ndarray) -> str:
    rounded = np.round(np.asarray(vector, dtype=np.float32), _SEMANTIC_HASH_DECIMALS)
    rounded = rounded + 0.0  # fold -0.0 into 0.0
    return hashlib.sha256(rounded.tobytes()).hexdigest()


class Fingerprinter:
    """Computes the exact, semantic and template keys for a request."""

    def __init__(self, embedder: ModelClient | None = None) -> None:
        self.embedder = embedder

    async def semantic_signature(self, request: GenerationRequest) -> SemanticSignature:
        if self.embedder is None:
            raise EmbeddingUnavailableError(
                ErrorKind.VALIDATION, "No embedding provider configured"
            )
        vector = await self.embedder.embed(normalize_whitespace(request.rendered_prompt))
        normalized = unit_normalize(vector)
        if not np.any(normalized):
            raise EmbeddingUnavailableError(
                ErrorKind.PARSE, "Embedding provider returned a zero vector"
            )
        return SemanticSignature(vector=normalized, hash=semantic_hash(normalized))

    async def fingerprint(
        self, request: GenerationRequest, enhanced: bool = True
    ) -> FingerprintSet:
        """Build the fingerprint set.

        The exact hash never touches the network. When ``enhanced`` is set the
        template signature is always produced and the semantic signature is
        attempted; an embedding failure is recorded in ``semantic_error``.
        """
        exact = exact_hash(request)
        if not enhanced:
            return FingerprintSet(exact_hash=exact)

        template = template_hash(request)
        try:
            semantic = await self.semantic_signature(request)
        except EmbeddingUnavailableError as exc:
            logger.warning(
                "Semantic fingerprint unavailable",
                template_id=request.template_id,
                kind=exc.kind.value,
                error=exc.message,
            )
            return FingerprintSet(
                exact_hash=exact,
                template_hash=template,
                semantic_error=f"{exc.kind.value}: {exc.message}",
            )
        return FingerprintSet(exact_hash=exact, semantic=semantic, template_hash=template)

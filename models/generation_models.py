# models/generation_models.py
"""Request, fingerprint and result contracts for the generation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.usage import TokenUsage


class ModelClass(str, Enum):
    """Cost tier of a language model."""

    SMALL = "small"
    BIG = "big"


class ContractModel(BaseModel):
    """Immutable model that accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        use_enum_values=False,
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class GenerationContext(ContractModel):
    project_id: str
    chapter_id: str | None = None
    scene_id: str | None = None


class GenerationConstraints(ContractModel):
    """Content rules the output is checked against."""

    min_words: int | None = None
    max_words: int | None = None
    required_entities: tuple[str, ...] = ()
    # term -> replacement; ``None`` means the term is removed on repair
    forbidden_terms: dict[str, str | None] = Field(default_factory=dict)
    # canonical name -> known variants
    character_names: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    max_paragraph_chars: int | None = None

    def hard_constraint_count(self) -> int:
        count = len(self.required_entities) + len(self.forbidden_terms)
        count += len(self.character_names)
        if self.min_words is not None:
            count += 1
        if self.max_words is not None:
            count += 1
        return count


class GenerationRequest(ContractModel):
    """A single generation request. Immutable once submitted."""

    template_id: str
    template_version: str
    rendered_prompt: str = Field(min_length=1)
    context: GenerationContext
    target_model_class: ModelClass | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    template_variables: dict[str, str] = Field(default_factory=dict)
    constraints: GenerationConstraints = Field(default_factory=GenerationConstraints)
    model_preference_hints: dict[str, Any] = Field(default_factory=dict)

    @property
    def project_id(self) -> str:
        return self.context.project_id

    @property
    def chapter_id(self) -> str | None:
        return self.context.chapter_id

    @property
    def scene_id(self) -> str | None:
        return self.context.scene_id


@dataclass(frozen=True, eq=False)
class SemanticSignature:
    """Unit-normalised embedding plus a digest usable as an index key."""

    vector: np.ndarray
    hash: str


@dataclass(frozen=True)
class FingerprintSet:
    """Identity keys derived from a request."""

    exact_hash: str
    semantic: SemanticSignature | None = None
    template_hash: str | None = None
    semantic_error: str | None = None

    @property
    def has_semantic(self) -> bool:
        return self.semantic is not None


@dataclass
class ModelResponse:
    """Text returned by one successful provider call."""

    text: str
    model_name: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw_snippet: str | None = None

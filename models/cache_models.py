# models/cache_models.py
"""Cache tiers and entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np


class CacheTier(str, Enum):
    EXACT = "exact"
    SEMANTIC = "semantic"
    TEMPLATE = "template"


# Lookup order: byte-identical provenance first, then closest intent.
CACHE_TIER_PRECEDENCE: tuple[CacheTier, ...] = (
    CacheTier.EXACT,
    CacheTier.SEMANTIC,
    CacheTier.TEMPLATE,
)


@dataclass(frozen=True)
class CacheMetadata:
    model_id: str
    cost: float = 0.0
    quality: float | None = None
    tokens_used: int = 0
    execution_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "cost": self.cost,
            "quality": self.quality,
            "tokens_used": self.tokens_used,
            "execution_id": self.execution_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheMetadata:
        return cls(
            model_id=str(data["model_id"]),
            cost=float(data.get("cost") or 0.0),
            quality=None if data.get("quality") is None else float(data["quality"]),
            tokens_used=int(data.get("tokens_used") or 0),
            execution_id=data.get("execution_id"),
        )


@dataclass(frozen=True, eq=False)
class CacheEntry:
    """A reusable result in one of the three tiers.

    ``similarity`` is only set on semantic-tier lookups.
    """

    entry_id: int
    tier: CacheTier
    fingerprint: str
    template_id: str
    result: dict[str, Any]
    metadata: CacheMetadata
    hit_count: int
    created_at: datetime
    expires_at: datetime
    embedding: np.ndarray | None = None
    similarity: float | None = None

    @property
    def content(self) -> str:
        return str(self.result.get("content", ""))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class CacheStats:
    total_entries: int = 0
    total_hits: int = 0
    average_quality: float = 0.0
    entries_by_tier: dict[str, int] = field(default_factory=dict)
    hits_by_tier: dict[str, int] = field(default_factory=dict)

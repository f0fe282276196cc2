# caching/cache_store.py
"""Three-tier result cache backed by a single ``cached_executions`` table."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

import numpy as np
import structlog

from config import settings
from core.db_manager import DatabaseManager, deserialize_embedding, serialize_embedding
from core.errors import CacheCorruptionError
from models.cache_models import (
    CACHE_TIER_PRECEDENCE,
    CacheEntry,
    CacheMetadata,
    CacheStats,
    CacheTier,
)
from models.generation_models import FingerprintSet, SemanticSignature
from utils.similarity import best_match

logger = structlog.get_logger(__name__)

_SELECT_COLUMNS = """
    id, tier, fingerprint, template_id, execution_id, result, metadata,
    embedding_blob, embedding_dtype, embedding_shape, hit_count,
    created_at, updated_at, expires_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class CacheStore:
    """Lookup, store and maintenance for cached generation results.

    Lookup precedence is exact, then semantic, then template. Expired rows
    are filtered in SQL and never returned. A row that cannot be decoded is
    deleted and treated as a miss.
    """

    def __init__(
        self,
        db: DatabaseManager,
        ttl_days: int = settings.CACHE_TTL_DAYS,
        similarity_threshold: float = settings.SEMANTIC_SIMILARITY_THRESHOLD,
        candidate_limit: int = settings.SEMANTIC_CANDIDATE_LIMIT,
        min_quality_to_cache: float = settings.MIN_QUALITY_TO_CACHE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.ttl = timedelta(days=ttl_days)
        self.similarity_threshold = similarity_threshold
        self.candidate_limit = candidate_limit
        self.min_quality_to_cache = min_quality_to_cache
        self._clock = clock
        self._write_lock = asyncio.Lock()

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------ lookup

    async def lookup(
        self,
        fingerprints: FingerprintSet,
        template_id: str,
        tiers: Iterable[CacheTier] | None = None,
    ) -> CacheEntry | None:
        """Return the first live entry in precedence order, or ``None``."""
        allowed = set(tiers) if tiers is not None else set(CACHE_TIER_PRECEDENCE)
        for tier in CACHE_TIER_PRECEDENCE:
            if tier not in allowed:
                continue
            try:
                entry = await self._lookup_tier(tier, fingerprints, template_id)
            except sqlite3.Error as exc:
                logger.error("Cache lookup failed; treating as miss", tier=tier.value, error=str(exc))
                continue
            if entry is not None:
                logger.debug(
                    "Cache hit",
                    tier=tier.value,
                    fingerprint=entry.fingerprint[:12],
                    similarity=entry.similarity,
                )
                return entry
        return None

    async def _lookup_tier(
        self, tier: CacheTier, fingerprints: FingerprintSet, template_id: str
    ) -> CacheEntry | None:
        if tier == CacheTier.EXACT:
            return await self._lookup_key(tier, fingerprints.exact_hash)
        if tier == CacheTier.TEMPLATE:
            if not fingerprints.template_hash:
                return None
            return await self._lookup_key(tier, fingerprints.template_hash)
        if fingerprints.semantic is None:
            return None
        return await self._lookup_semantic(fingerprints.semantic, template_id)

    async def _lookup_key(self, tier: CacheTier, fingerprint: str) -> CacheEntry | None:
        row = await self.db.fetch_one(
            f"SELECT {_SELECT_COLUMNS} FROM cached_executions "
            "WHERE tier = ? AND fingerprint = ? AND expires_at > ?",
            (tier.value, fingerprint, self.now().timestamp()),
        )
        if row is None:
            return None
        return await self._decode_or_evict(row)

    async def _lookup_semantic(
        self, signature: SemanticSignature, template_id: str
    ) -> CacheEntry | None:
        now_ts = self.now().timestamp()
        indexed = await self.db.fetch_one(
            f"SELECT {_SELECT_COLUMNS} FROM cached_executions "
            "WHERE tier = ? AND fingerprint = ? AND expires_at > ?",
            (CacheTier.SEMANTIC.value, signature.hash, now_ts),
        )
        if indexed is not None:
            entry = await self._decode_or_evict(indexed)
            if entry is not None:
                return self._with_similarity(entry, 1.0)

        rows = await self.db.fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM cached_executions "
            "WHERE tier = ? AND template_id = ? AND expires_at > ? "
            "ORDER BY updated_at DESC LIMIT ?",
            (CacheTier.SEMANTIC.value, template_id, now_ts, self.candidate_limit),
        )
        candidates: list[CacheEntry] = []
        for row in rows:
            entry = await self._decode_or_evict(row)
            if entry is not None and entry.embedding is not None:
                candidates.append(entry)

        match = best_match(signature.vector, [c.embedding for c in candidates])
        if match is None:
            return None
        index, best_similarity = match
        if best_similarity < self.similarity_threshold:
            logger.debug(
                "Semantic candidate below threshold",
                similarity=round(best_similarity, 4),
                threshold=self.similarity_threshold,
            )
            return None
        return self._with_similarity(candidates[index], best_similarity)

    @staticmethod
    def _with_similarity(entry: CacheEntry, similarity: float) -> CacheEntry:
        return CacheEntry(
            entry_id=entry.entry_id,
            tier=entry.tier,
            fingerprint=entry.fingerprint,
            template_id=entry.template_id,
            result=entry.result,
            metadata=entry.metadata,
            hit_count=entry.hit_count,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            embedding=entry.embedding,
            similarity=similarity,
        )

    async def _decode_or_evict(self, row: Any) -> CacheEntry | None:
        try:
            entry = self._decode(row)
        except CacheCorruptionError as exc:
            logger.warning("Evicting corrupted cache entry", entry_id=row["id"], error=str(exc))
            await self.remove(row["id"])
            return None
        if entry.is_expired(self.now()):
            return None
        return entry

    @staticmethod
    def _decode(row: Any) -> CacheEntry:
        try:
            result = json.loads(row["result"])
            if not isinstance(result, dict) or "content" not in result:
                raise ValueError("result payload has no content")
            metadata = CacheMetadata.from_dict(json.loads(row["metadata"]))
            embedding = None
            if row["embedding_blob"] is not None:
                embedding = deserialize_embedding(
                    row["embedding_blob"], row["embedding_dtype"], row["embedding_shape"]
                )
            return CacheEntry(
                entry_id=int(row["id"]),
                tier=CacheTier(row["tier"]),
                fingerprint=row["fingerprint"],
                template_id=row["template_id"],
                result=result,
                metadata=metadata,
                hit_count=int(row["hit_count"]),
                created_at=_from_epoch(row["created_at"]),
                expires_at=_from_epoch(row["expires_at"]),
                embedding=embedding,
            )
        except (ValueError, KeyError, TypeError) as exc:
            # json.JSONDecodeError is a ValueError
            raise CacheCorruptionError(str(exc)) from exc

    # ------------------------------------------------------------------- write

    async def store(
        self,
        tier: CacheTier,
        fingerprint: str,
        template_id: str,
        result: dict[str, Any],
        metadata: CacheMetadata,
        embedding: np.ndarray | None = None,
    ) -> None:
        """Create or refresh an entry. The row becomes visible in one statement."""
        now = self.now()
        blob = dtype = shape = None
        if embedding is not None:
            blob, dtype, shape = serialize_embedding(embedding)
        async with self._write_lock:
            await self.db.execute(
                """
                INSERT INTO cached_executions (
                    tier, fingerprint, template_id, execution_id, result, metadata,
                    embedding_blob, embedding_dtype, embedding_shape, hit_count,
                    created_at, updated_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT (tier, fingerprint) DO UPDATE SET
                    template_id = excluded.template_id,
                    execution_id = excluded.execution_id,
                    result = excluded.result,
                    metadata = excluded.metadata,
                    embedding_blob = excluded.embedding_blob,
                    embedding_dtype = excluded.embedding_dtype,
                    embedding_shape = excluded.embedding_shape,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at,
                    expires_at = excluded.expires_at
                """,
                (
                    tier.value,
                    fingerprint,
                    template_id,
                    metadata.execution_id,
                    json.dumps(result, ensure_ascii=False),
                    json.dumps(metadata.to_dict()),
                    blob,
                    dtype,
                    shape,
                    now.timestamp(),
                    now.timestamp(),
                    (now + self.ttl).timestamp(),
                ),
            )
        logger.debug("Cache entry stored", tier=tier.value, fingerprint=fingerprint[:12])

    async def populate(
        self,
        fingerprints: FingerprintSet,
        template_id: str,
        content: str,
        metadata: CacheMetadata,
        enhanced: bool,
    ) -> list[CacheTier]:
        """Store a fresh result in every applicable tier.

        The exact tier is always written. Semantic and template tiers are
        written only with ``enhanced`` set and when the result's quality is
        unknown or at least ``min_quality_to_cache``.
        """
        payload = {"content": content}
        written = [CacheTier.EXACT]
        await self.store(CacheTier.EXACT, fingerprints.exact_hash, template_id, payload, metadata)
        if not enhanced:
            return written
        if metadata.quality is not None and metadata.quality < self.min_quality_to_cache:
            logger.info(
                "Quality below reuse bar; skipping semantic/template tiers",
                quality=metadata.quality,
                min_quality=self.min_quality_to_cache,
            )
            return written
        if fingerprints.semantic is not None:
            await self.store(
                CacheTier.SEMANTIC,
                fingerprints.semantic.hash,
                template_id,
                payload,
                metadata,
                embedding=fingerprints.semantic.vector,
            )
            written.append(CacheTier.SEMANTIC)
        if fingerprints.template_hash:
            await self.store(
                CacheTier.TEMPLATE, fingerprints.template_hash, template_id, payload, metadata
            )
            written.append(CacheTier.TEMPLATE)
        return written

    async def touch(self, entry: CacheEntry) -> int:
        """Atomically increment the hit count; returns the new count."""
        async with self._write_lock:
            row = await self.db.execute_returning(
                "UPDATE cached_executions SET hit_count = hit_count + 1, updated_at = ? "
                "WHERE id = ? RETURNING hit_count",
                (self.now().timestamp(), entry.entry_id),
            )
        if row is None:
            logger.warning("Touched cache entry no longer exists", entry_id=entry.entry_id)
            return entry.hit_count
        return int(row["hit_count"])

    async def remove(self, entry_id: int) -> None:
        async with self._write_lock:
            await self.db.execute("DELETE FROM cached_executions WHERE id = ?", (entry_id,))

    # ------------------------------------------------------------- maintenance

    async def sweep_expired(self, cutoff: datetime | None = None) -> int:
        """Delete entries whose expiry is at or before ``cutoff`` (default now)."""
        cutoff = cutoff or self.now()
        async with self._write_lock:
            removed = await self.db.execute(
                "DELETE FROM cached_executions WHERE expires_at <= ?", (cutoff.timestamp(),)
            )
        logger.info("Swept expired cache entries", removed=removed)
        return removed

    async def cleanup(self, days_old: int) -> int:
        """Delete entries created more than ``days_old`` days ago."""
        if days_old < 0:
            raise ValueError("days_old must be non-negative")
        cutoff = self.now() - timedelta(days=days_old)
        async with self._write_lock:
            removed = await self.db.execute(
                "DELETE FROM cached_executions WHERE created_at < ?", (cutoff.timestamp(),)
            )
        logger.info("Cleaned up old cache entries", days_old=days_old, removed=removed)
        return removed

    async def purge_all(self) -> int:
        async with self._write_lock:
            removed = await self.db.execute("DELETE FROM cached_executions")
        logger.info("Purged cache", removed=removed)
        return removed

    async def stats(self) -> CacheStats:
        rows = await self.db.fetch_all(
            "SELECT tier, COUNT(*) AS entries, COALESCE(SUM(hit_count), 0) AS hits, "
            "AVG(json_extract(metadata, '$.quality')) AS avg_quality "
            "FROM cached_executions WHERE expires_at > ? GROUP BY tier",
            (self.now().timestamp(),),
        )
        stats = CacheStats()
        weighted_quality = 0.0
        quality_entries = 0
        for row in rows:
            entries = int(row["entries"])
            stats.entries_by_tier[row["tier"]] = entries
            stats.hits_by_tier[row["tier"]] = int(row["hits"])
            stats.total_entries += entries
            stats.total_hits += int(row["hits"])
            if row["avg_quality"] is not None:
                weighted_quality += float(row["avg_quality"]) * entries
                quality_entries += entries
        if quality_entries:
            stats.average_quality = round(weighted_quality / quality_entries, 1)
        return stats

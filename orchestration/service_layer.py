# orchestration/service_layer.py
"""Service layer exposing the in-process contract to upstream collaborators."""

from __future__ import annotations

import uuid
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from audit.cost_monitor import BudgetConfig, CostAlert, CostMonitor, CostStats
from audit.generation_logger import GenerationLogger
from caching.cache_store import CacheStore
from caching.fingerprinter import Fingerprinter
from core.db_manager import DatabaseManager
from core.errors import ErrorKind, GenerationFailedError
from core.llm_interface import ModelClient
from features.feature_gate import COST_MONITORING, FeatureGate
from features.schema_checker import SchemaCompatibilityChecker
from models.audit_models import GenerationLogEntry, GenerationResult, LogFilters, LogPage
from models.cache_models import CacheStats, CacheTier
from models.feature_models import FeatureStatus, SchemaCompatibilityReport
from models.generation_models import GenerationRequest

from .generation_pipeline import GenerationPipeline
from .retry_policy import RetryPolicy

logger = structlog.get_logger(__name__)


class GenerationService:
    """Coordinate submission, audit reads, cache maintenance and feature administration."""

    def __init__(
        self,
        db: DatabaseManager,
        model_client: ModelClient,
        override_store: MutableMapping[str, bool] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.db = db
        self.schema_checker = SchemaCompatibilityChecker(db)
        self.feature_gate = FeatureGate(self.schema_checker, override_store)
        self.cache_store = CacheStore(db)
        self.generation_logger = GenerationLogger(db)
        self.cost_monitor = CostMonitor(self.generation_logger)
        self.pipeline = GenerationPipeline(
            db,
            model_client,
            feature_gate=self.feature_gate,
            cache_store=self.cache_store,
            fingerprinter=Fingerprinter(model_client),
            generation_logger=self.generation_logger,
            retry_policy=retry_policy,
        )

    async def startup(self) -> str:
        """Bring the store up to the latest schema version."""
        version = await self.db.init_schema()
        self.schema_checker.invalidate()
        return version

    # ------------------------------------------------------------ submission

    async def submit(self, request: GenerationRequest) -> GenerationResult:
        return await self.pipeline.submit(request)

    async def submit_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Submit a camelCase payload; always returns a result or a structured error."""
        try:
            request = GenerationRequest.model_validate(payload)
        except ValidationError as exc:
            error = GenerationFailedError(
                ErrorKind.VALIDATION,
                "Invalid generation request",
                str(uuid.uuid4()),
                {"errors": exc.errors(include_url=False)},
            )
            logger.warning("Rejected invalid submission", errors=len(exc.errors()))
            return {"ok": False, "error": error.to_dict()}
        try:
            result = await self.pipeline.submit(request)
        except GenerationFailedError as exc:
            return {"ok": False, "error": exc.to_dict()}
        return {"ok": True, **result.to_dict()}

    # ------------------------------------------------------------- audit log

    async def list_logs(
        self,
        project_id: str | None = None,
        cache_tier: CacheTier | None = None,
        min_quality: float | None = None,
        limit: int = 50,
        offset: int = 0,
        **filters: Any,
    ) -> LogPage:
        query = LogFilters(
            project_id=project_id, cache_tier=cache_tier, min_quality=min_quality, **filters
        )
        return await self.generation_logger.query(query, limit=limit, offset=offset)

    async def get_execution(self, execution_id: str) -> GenerationLogEntry | None:
        return await self.generation_logger.get_execution(execution_id)

    async def record_correction(
        self, execution_id: str, corrected_text: str, reason: str
    ) -> GenerationLogEntry:
        outcome = self.pipeline.evaluator.evaluate(corrected_text)
        return await self.generation_logger.record_correction(
            execution_id, corrected_text, reason, quality_score=outcome.score
        )

    # ----------------------------------------------------------------- cache

    async def cache_cleanup(self, days_old: int) -> int:
        return await self.cache_store.cleanup(days_old)

    async def cache_sweep(self, cutoff: datetime | None = None) -> int:
        return await self.cache_store.sweep_expired(cutoff or datetime.now(timezone.utc))

    async def cache_purge(self) -> int:
        return await self.cache_store.purge_all()

    async def cache_stats(self) -> CacheStats:
        return await self.cache_store.stats()

    # -------------------------------------------------------- feature admin

    async def feature_statuses(self) -> list[FeatureStatus]:
        return await self.feature_gate.statuses()

    def set_override(self, name: str, enabled: bool) -> None:
        if enabled:
            self.feature_gate.enable(name)
        else:
            self.feature_gate.disable(name)

    def clear_override(self, name: str) -> None:
        self.feature_gate.clear_override(name)

    def rollback_to_legacy(self) -> None:
        self.feature_gate.rollback_to_legacy()

    def enable_stable_features(self) -> None:
        self.feature_gate.enable_stable_features()

    async def feature_report(self) -> str:
        return await self.feature_gate.status_report()

    # --------------------------------------------------------- compatibility

    async def compatibility(self) -> SchemaCompatibilityReport:
        return await self.schema_checker.check_compatibility()

    async def compatibility_report(self) -> str:
        return await self.schema_checker.compatibility_report()

    # ------------------------------------------------------------------ cost

    async def cost_stats(self, project_id: str | None = None) -> CostStats | None:
        if not await self.feature_gate.is_enabled(COST_MONITORING):
            logger.warning("Cost monitoring disabled")
            return None
        return await self.cost_monitor.cost_stats(project_id)

    async def cost_alerts(self, project_id: str) -> list[CostAlert]:
        if not await self.feature_gate.is_enabled(COST_MONITORING):
            logger.warning("Cost monitoring disabled")
            return []
        return await self.cost_monitor.check_alerts(project_id)

    def set_budget(self, config: BudgetConfig) -> None:
        self.cost_monitor.set_budget(config)

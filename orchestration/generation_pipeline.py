# orchestration/generation_pipeline.py
"""
Request flow: feature resolution, fingerprinting, cache lookup, model
routing with a single small-to-big escalation, quality gate and repair,
one audit append per request, then cache population.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from __future__ import annotations

import sqlite3

import structlog

from audit.generation_logger import ExecutionContext, GenerationLogger
from caching.cache_store import CacheStore
from caching.fingerprinter import Fingerprinter
from config import settings
from core.db_manager import DatabaseManager
from core.errors import (
    AuditWriteError,
    ErrorKind,
    GenerationFailedError,
    ModelCallError,
    QualityRejectedError,
)
from core.llm_interface import ModelClient
from features.feature_gate import (
    AUTO_REPAIR,
    ENHANCED_CACHE,
    GENERATION_LOGS,
    MODEL_ROUTING,
    QUALITY_EVALUATION,
    SEMANTIC_CACHE_PROBE,
    FeatureGate,
)
from features.schema_checker import SchemaCompatibilityChecker
from models.audit_models import GenerationResult
from models.cache_models import CACHE_TIER_PRECEDENCE, CacheEntry, CacheMetadata, CacheTier
from models.generation_models import FingerprintSet, GenerationRequest, ModelClass
from quality.evaluator import QualityEvaluator
from quality.repair_engine import RepairEngine
from routing.model_router import (
    BIG_MODEL,
    CACHE_CHECK,
    DONE,
    FAILED,
    FALLBACK_BIG_MODEL,
    HIT,
    MISS,
    QUALITY_CHECK,
    SMALL_MODEL,
    STRATEGY_SELECT,
    ModelRouter,
    RouteTrace,
    RoutingPlan,
)

from .retry_policy import RetryPolicy, error_kind_of

logger = structlog.get_logger(__name__)

PROBE_PROMPT = """Answer with a single word: yes or no.
Is the PASSAGE an acceptable response to the REQUEST?

REQUEST:
{prompt}

PASSAGE:
{content}
"""
_PROBE_EXCERPT_CHARS = 2000


class GenerationPipeline:
    """Serves one generation request end to end."""

    def __init__(
        self,
        db: DatabaseManager,
        model_client: ModelClient,
        feature_gate: FeatureGate | None = None,
        cache_store: CacheStore | None = None,
        fingerprinter: Fingerprinter | None = None,
        router: ModelRouter | None = None,
        evaluator: QualityEvaluator | None = None,
        repair_engine: RepairEngine | None = None,
        generation_logger: GenerationLogger | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.db = db
        self.model_client = model_client
        self.feature_gate = feature_gate or FeatureGate(SchemaCompatibilityChecker(db))
        self.cache_store = cache_store or CacheStore(db)
        self.fingerprinter = fingerprinter or Fingerprinter(model_client)
        self.router = router or ModelRouter()
        self.evaluator = evaluator or QualityEvaluator()
        self.repair_engine = repair_engine or RepairEngine(model_client)
        self.generation_logger = generation_logger or GenerationLogger(db)
        self.retry_policy = retry_policy or RetryPolicy()

    async def submit(self, request: GenerationRequest) -> GenerationResult:
        """Return a usable result or raise ``GenerationFailedError``."""
        flags = await self.feature_gate.get_config()
        context = self.generation_logger.start(request)
        context.metadata["features"] = sorted(name for name, on in flags.items() if on)
        trace = RouteTrace()
        trace.step(CACHE_CHECK)

        enhanced = flags.get(ENHANCED_CACHE, False)
        fingerprints = await self.fingerprinter.fingerprint(request, enhanced=enhanced)
        if enhanced:
            context.metadata["semantic_status"] = (
                "available" if fingerprints.has_semantic else "unavailable"
            )
            if fingerprints.semantic_error:
                context.metadata["semantic_error"] = fingerprints.semantic_error

        entry = await self._cached_entry(request, fingerprints, context, flags)
        if entry is not None:
            return await self._serve_from_cache(entry, context, trace, flags)

        trace.step(MISS)
        trace.step(STRATEGY_SELECT)
        plan = self.router.select(request, routing_enabled=flags.get(MODEL_ROUTING, False))
        return await self._generate(request, plan, fingerprints, context, trace, flags)

    async def _cached_entry(
        self,
        request: GenerationRequest,
        fingerprints: FingerprintSet,
        context: ExecutionContext,
        flags: dict[str, bool],
    ) -> CacheEntry | None:
        tiers = CACHE_TIER_PRECEDENCE if flags.get(ENHANCED_CACHE) else (CacheTier.EXACT,)
        entry = await self.cache_store.lookup(fingerprints, request.template_id, tiers)
        if entry is None:
            return None

        if flags.get(QUALITY_EVALUATION):
            outcome = self.evaluator.evaluate(entry.content, request.constraints)
            if not outcome.accepted:
                logger.info(
                    "Cached result fails this request's quality gate; treating as miss",
                    tier=entry.tier.value,
                    reasons=outcome.reasons,
                )
                context.metadata["cache_rejected"] = entry.tier.value
                return None
            context.quality_score = outcome.score
            context.violations = list(outcome.violations)

        if entry.tier != CacheTier.EXACT and flags.get(SEMANTIC_CACHE_PROBE):
            if not await self._probe(request, entry, context):
                context.metadata["probe_rejected"] = entry.tier.value
                return None
        return entry

    async def _probe(
        self, request: GenerationRequest, entry: CacheEntry, context: ExecutionContext
    ) -> bool:
        """Ask the verification model whether a non-exact hit fits the request."""
        model = settings.VERIFICATION_MODEL or settings.SMALL_MODEL
        prompt = PROBE_PROMPT.format(
            prompt=request.rendered_prompt[:_PROBE_EXCERPT_CHARS],
            content=entry.content[:_PROBE_EXCERPT_CHARS],
        )
        try:
            response = await self.model_client.generate(
                model,
                prompt,
                {"temperature": settings.TEMPERATURE_VERIFICATION, "max_tokens": 5},
            )
        except ModelCallError as exc:
            logger.warning(
                "Cache probe failed; trusting cached result",
                tier=entry.tier.value,
                kind=exc.kind.value,
                error=exc.message,
            )
            context.record_attempt("probe", model, "failed", error_kind=exc.kind)
            return True
        context.record_attempt("probe", model, "ok", response.usage)
        verdict = response.text.strip().lower().startswith("yes")
        logger.info("Cache probe verdict", tier=entry.tier.value, accepted=verdict)
        return verdict

    async def _serve_from_cache(
        self,
        entry: CacheEntry,
        context: ExecutionContext,
        trace: RouteTrace,
        flags: dict[str, bool],
    ) -> GenerationResult:
        trace.step(HIT)
        trace.step(DONE)

        # the audit row carries the expected count; the counter moves only once it is written
        context.cache_path = entry.tier
        context.cache_hit_count = entry.hit_count + 1
        context.model_id = entry.metadata.model_id
        context.route_decision = self.router.cache_decision(
            entry, trace, {"source_execution_id": entry.metadata.execution_id}
        )
        await self._persist(context, entry.content, flags)
        try:
            context.cache_hit_count = await self.cache_store.touch(entry)
        except sqlite3.Error as exc:
            logger.error("Cache hit count update failed", entry_id=entry.entry_id, error=str(exc))
        logger.info(
            "Served from cache",
            execution_id=context.execution_id,
            tier=entry.tier.value,
            hit_count=context.cache_hit_count,
        )
        return self._result(context, entry.content)

    async def _generate(
        self,
        request: GenerationRequest,
        plan: RoutingPlan,
        fingerprints: FingerprintSet,
        context: ExecutionContext,
        trace: RouteTrace,
        flags: dict[str, bool],
    ) -> GenerationResult:
        tier = plan.first_tier
        escalated = False
        retries = 0
        while True:
            trace.step(SMALL_MODEL if tier == ModelClass.SMALL else BIG_MODEL)
            model = self.router.model_for(tier)
            try:
                text = await self._attempt(request, tier, model, context, trace, flags)
            except (ModelCallError, QualityRejectedError) as exc:
                if tier == ModelClass.SMALL:
                    self.router.record_small_outcome(request.template_id, failed=True)
                    if not escalated:
                        escalated = True
                        tier = ModelClass.BIG
                        context.retry_count += 1
                        trace.step(FALLBACK_BIG_MODEL)
                        logger.info(
                            "Small model failed; escalating to big model",
                            execution_id=context.execution_id,
                            kind=error_kind_of(exc).value,
                        )
                        continue
                if self.retry_policy.should_retry(exc, retries):
                    await self.retry_policy.backoff(retries)
                    retries += 1
                    context.retry_count += 1
                    logger.info(
                        "Retrying generation",
                        execution_id=context.execution_id,
                        tier=tier.value,
                        retry=retries,
                        kind=error_kind_of(exc).value,
                    )
                    continue
                raise await self._fail(context, plan, trace, exc, flags) from exc
            else:
                if tier == ModelClass.SMALL:
                    self.router.record_small_outcome(request.template_id, failed=False)
                break

        trace.step(DONE)
        context.model_id = model
        context.model_version = self.router.model_version_for(tier)
        context.route_decision = self.router.model_decision(plan, trace, self._route_extras(context))
        await self._persist(context, text, flags)
        await self._populate_cache(request, fingerprints, context, text, enhanced=flags.get(ENHANCED_CACHE, False))
        logger.info(
            "Generation complete",
            execution_id=context.execution_id,
            strategy=context.route_decision.strategy.value,
            retry_count=context.retry_count,
            tokens=context.usage.total_tokens,
        )
        return self._result(context, text)

    async def _attempt(
        self,
        request: GenerationRequest,
        tier: ModelClass,
        model: str,
        context: ExecutionContext,
        trace: RouteTrace,
        flags: dict[str, bool],
    ) -> str:
        try:
            response = await self.model_client.generate(
                model, request.rendered_prompt, dict(request.parameters)
            )
        except ModelCallError as exc:
            context.record_attempt(
                tier.value, model, "error", error_kind=exc.kind, detail=exc.message
            )
            raise
        trace.step(QUALITY_CHECK)
        try:
            text = await self._quality_gate(response.text, request, context, flags)
        except QualityRejectedError as exc:
            context.record_attempt(
                tier.value, model, "rejected", response.usage, ErrorKind.VALIDATION, str(exc)
            )
            raise
        context.record_attempt(tier.value, model, "accepted", response.usage)
        return text

    async def _quality_gate(
        self,
        text: str,
        request: GenerationRequest,
        context: ExecutionContext,
        flags: dict[str, bool],
    ) -> str:
        context.repairs = []
        if not flags.get(QUALITY_EVALUATION):
            context.quality_score = None
            context.violations = []
            if not text.strip():
                raise QualityRejectedError("Model returned no usable text")
            return text

        constraints = request.constraints
        outcome = self.evaluator.evaluate(text, constraints)
        if flags.get(AUTO_REPAIR) and any(
            self.repair_engine.can_attempt(v) for v in outcome.violations
        ):
            repair = await self.repair_engine.repair(text, outcome.violations, constraints)
            if repair.usage.total_tokens or repair.usage.cost:
                context.record_attempt("repair", self.repair_engine.repair_model, "ok", repair.usage)
            context.repairs = list(repair.actions)
            if repair.changed:
                text = repair.text
                outcome = self.evaluator.evaluate(text, constraints)

        context.quality_score = outcome.score
        context.violations = list(outcome.violations)
        if not outcome.accepted:
            raise QualityRejectedError("; ".join(outcome.reasons), outcome.violations)
        return text

    @staticmethod
    def _route_extras(context: ExecutionContext) -> dict[str, object]:
        extras: dict[str, object] = {}
        for key in ("semantic_status", "semantic_error", "cache_rejected", "probe_rejected"):
            if key in context.metadata:
                extras[key] = context.metadata[key]
        return extras

    async def _fail(
        self,
        context: ExecutionContext,
        plan: RoutingPlan,
        trace: RouteTrace,
        exc: ModelCallError | QualityRejectedError,
        flags: dict[str, bool],
    ) -> GenerationFailedError:
        trace.step(FAILED)
        kind = error_kind_of(exc)
        details: dict[str, object] = {"retries_exhausted": context.retry_count}
        if isinstance(exc, ModelCallError):
            message = exc.message
            details.update(exc.details())
            if kind == ErrorKind.PARSE:
                details["parse_error"] = type(exc.__cause__ or exc).__name__
        else:
            message = str(exc)
            details["violations"] = [v.to_dict() for v in exc.violations]
            details["suggestions"] = [v.suggestion for v in exc.violations if v.suggestion]
        context.fail(kind, message, details)
        context.route_decision = self.router.model_decision(plan, trace, self._route_extras(context))
        logger.error(
            "Generation failed",
            execution_id=context.execution_id,
            kind=kind.value,
            error=message,
            retry_count=context.retry_count,
        )
        try:
            await self._persist(context, None, flags)
        except GenerationFailedError as audit_exc:
            details["audit_error"] = audit_exc.message
        return GenerationFailedError(kind, message, context.execution_id, details)

    async def _persist(
        self, context: ExecutionContext, text: str | None, flags: dict[str, bool]
    ) -> None:
        if not flags.get(GENERATION_LOGS):
            logger.warning(
                "Generation logs disabled; execution not audited",
                execution_id=context.execution_id,
            )
            return
        try:
            await self.generation_logger.finalize(context, text)
        except AuditWriteError as exc:
            raise GenerationFailedError(
                ErrorKind.UNKNOWN,
                f"Audit record could not be written: {exc}",
                context.execution_id,
                {"stage": "audit"},
            ) from exc

    async def _populate_cache(
        self,
        request: GenerationRequest,
        fingerprints: FingerprintSet,
        context: ExecutionContext,
        text: str,
        enhanced: bool,
    ) -> None:
        metadata = CacheMetadata(
            model_id=context.model_id or "unknown",
            cost=round(context.usage.cost, 6),
            quality=context.quality_score.overall if context.quality_score else None,
            tokens_used=context.usage.total_tokens,
            execution_id=context.execution_id,
        )
        try:
            tiers = await self.cache_store.populate(
                fingerprints, request.template_id, text, metadata, enhanced
            )
        except sqlite3.Error as exc:
            logger.error(
                "Cache population failed", execution_id=context.execution_id, error=str(exc)
            )
            return
        logger.debug(
            "Cache populated",
            execution_id=context.execution_id,
            tiers=[t.value for t in tiers],
        )

    @staticmethod
    def _result(context: ExecutionContext, text: str) -> GenerationResult:
        assert context.route_decision is not None
        return GenerationResult(
            execution_id=context.execution_id,
            result=text,
            quality_score=context.quality_score,
            route_decision=context.route_decision,
            cache_path=context.cache_path,
            hit_count=context.cache_hit_count,
            retry_count=context.retry_count,
            tokens_used=context.usage.total_tokens,
            cost=round(context.usage.cost, 6),
            model_id=context.model_id,
        )

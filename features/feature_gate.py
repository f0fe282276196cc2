# features/feature_gate.py
"""Feature flags resolved from defaults, overrides, dependencies and schema readiness."""

from __future__ import annotations

from collections.abc import Iterable, MutableMapping

import structlog

from config import settings
from core.errors import FeatureDependencyCycleError
from models.feature_models import FeatureFlag, FeatureStatus

from .schema_checker import SchemaCompatibilityChecker

logger = structlog.get_logger(__name__)

GENERATION_LOGS = "generation-logs"
ENHANCED_CACHE = "enhanced-cache"
COST_MONITORING = "cost-monitoring"
QUALITY_EVALUATION = "quality-evaluation"
AUTO_REPAIR = "auto-repair"
MODEL_ROUTING = "model-routing"
SEMANTIC_CACHE_PROBE = "semantic-cache-probe"

DEFAULT_FLAGS: tuple[FeatureFlag, ...] = (
    FeatureFlag(
        name=GENERATION_LOGS,
        enabled=True,
        description="Complete audit trail for all generations",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
    ),
    FeatureFlag(
        name=ENHANCED_CACHE,
        enabled=True,
        description="Three-tier cache (exact, semantic, template)",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
        depends_on=(GENERATION_LOGS,),
    ),
    FeatureFlag(
        name=COST_MONITORING,
        enabled=True,
        description="Cost statistics and budget alerts",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
        depends_on=(GENERATION_LOGS,),
    ),
    FeatureFlag(
        name=QUALITY_EVALUATION,
        enabled=True,
        description="Multi-dimensional quality scoring",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
        depends_on=(GENERATION_LOGS,),
    ),
    FeatureFlag(
        name=AUTO_REPAIR,
        enabled=True,
        description="Automatic repair of rule violations",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
        depends_on=(QUALITY_EVALUATION,),
    ),
    FeatureFlag(
        name=MODEL_ROUTING,
        enabled=True,
        description="Model tier routing based on request complexity",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
    ),
    FeatureFlag(
        name=SEMANTIC_CACHE_PROBE,
        enabled=False,
        description="Verify semantic and template cache hits with a probe prompt",
        requires_schema_version=settings.REQUIRED_SCHEMA_VERSION,
        depends_on=(ENHANCED_CACHE,),
        experimental=True,
    ),
)

STABLE_FEATURES: tuple[str, ...] = (
    GENERATION_LOGS,
    ENHANCED_CACHE,
    COST_MONITORING,
    QUALITY_EVALUATION,
    AUTO_REPAIR,
    MODEL_ROUTING,
)


class FeatureGate:
    """Resolves whether an optional capability runs.

    An override of ``False`` disables a flag outright. An override of ``True``
    replaces only the default state: dependencies and schema readiness are
    still required. Overrides live in the injected ``override_store`` and
    never touch the declared defaults.
    """

    def __init__(
        self,
        schema_checker: SchemaCompatibilityChecker | None = None,
        override_store: MutableMapping[str, bool] | None = None,
        flags: Iterable[FeatureFlag] | None = None,
    ) -> None:
        self.schema_checker = schema_checker
        self.overrides: MutableMapping[str, bool] = (
            override_store if override_store is not None else {}
        )
        self._flags: dict[str, FeatureFlag] = {}
        for flag in DEFAULT_FLAGS if flags is None else flags:
            self.register_flag(flag)

    @property
    def flags(self) -> dict[str, FeatureFlag]:
        return dict(self._flags)

    def register_flag(self, flag: FeatureFlag) -> None:
        """Add or replace a flag. Raises ``FeatureDependencyCycleError`` on a cycle."""
        previous = self._flags.get(flag.name)
        self._flags[flag.name] = flag
        cycle = self._find_cycle(flag.name)
        if cycle:
            if previous is None:
                del self._flags[flag.name]
            else:
                self._flags[flag.name] = previous
            raise FeatureDependencyCycleError(cycle)

    def _find_cycle(self, start: str) -> list[str] | None:
        path: list[str] = []
        on_path: set[str] = set()
        done: set[str] = set()

        def visit(name: str) -> list[str] | None:
            if name in on_path:
                return path[path.index(name):] + [name]
            if name in done or name not in self._flags:
                return None
            path.append(name)
            on_path.add(name)
            for dependency in self._flags[name].depends_on:
                found = visit(dependency)
                if found:
                    return found
            path.pop()
            on_path.discard(name)
            done.add(name)
            return None

        return visit(start)

    async def is_enabled(self, name: str) -> bool:
        return await self._resolve(name, {})

    async def _resolve(self, name: str, memo: dict[str, bool]) -> bool:
        if name in memo:
            return memo[name]
        memo[name] = await self._evaluate(name, memo)
        return memo[name]

    async def _evaluate(self, name: str, memo: dict[str, bool]) -> bool:
        flag = self._flags.get(name)
        if flag is None:
            logger.warning("Unknown feature flag", feature=name)
            return False

        override = self.overrides.get(name)
        if override is False:
            return False
        if override is None and not flag.enabled:
            return False

        if flag.requires_schema_version and not await self._schema_ready(flag):
            logger.warning(
                "Feature requires a schema upgrade",
                feature=name,
                required_version=flag.requires_schema_version,
            )
            return False

        for dependency in flag.depends_on:
            if not await self._resolve(dependency, memo):
                logger.debug(
                    "Feature disabled by dependency", feature=name, dependency=dependency
                )
                return False
        return True

    async def _schema_ready(self, flag: FeatureFlag) -> bool:
        if self.schema_checker is None:
            return True
        return await self.schema_checker.is_feature_available(
            flag.name, flag.requires_schema_version
        )

    def _require_known(self, name: str) -> None:
        if name not in self._flags:
            raise KeyError(f"Unknown feature flag: {name}")

    def enable(self, name: str) -> None:
        self._require_known(name)
        self.overrides[name] = True
        logger.info("Feature override set", feature=name, enabled=True)

    def disable(self, name: str) -> None:
        self._require_known(name)
        self.overrides[name] = False
        logger.info("Feature override set", feature=name, enabled=False)

    def clear_override(self, name: str) -> None:
        self.overrides.pop(name, None)
        logger.info("Feature override cleared", feature=name)

    def reset_overrides(self) -> None:
        self.overrides.clear()
        logger.info("All feature overrides cleared")

    async def statuses(self) -> list[FeatureStatus]:
        memo: dict[str, bool] = {}
        result = []
        for name, flag in self._flags.items():
            schema_available = True
            if flag.requires_schema_version:
                schema_available = await self._schema_ready(flag)
            result.append(
                FeatureStatus(
                    flag=flag,
                    actually_enabled=await self._resolve(name, memo),
                    override=self.overrides.get(name),
                    schema_available=schema_available,
                )
            )
        return result

    async def get_config(self) -> dict[str, bool]:
        return {status.flag.name: status.actually_enabled for status in await self.statuses()}

    def set_config(self, config: dict[str, bool]) -> None:
        """Apply overrides in bulk; unknown names are ignored."""
        for name, enabled in config.items():
            if name in self._flags:
                self.overrides[name] = bool(enabled)
            else:
                logger.warning("Ignoring override for unknown feature", feature=name)

    def rollback_to_legacy(self) -> None:
        """Disable every registered flag."""
        logger.warning("Rolling back to legacy mode")
        for name in self._flags:
            self.overrides[name] = False

    def enable_stable_features(self) -> None:
        logger.info("Enabling stable features")
        for name in STABLE_FEATURES:
            if name in self._flags:
                self.overrides[name] = True

    async def status_report(self) -> str:
        statuses = await self.statuses()
        enabled = [s for s in statuses if s.actually_enabled]
        disabled = [s for s in statuses if not s.actually_enabled]
        rule = "=" * 60
        lines = [rule, "Feature Flags Status Report", rule, ""]

        lines.append(f"Enabled Features ({len(enabled)}):")
        lines.append("-" * 60)
        for status in enabled:
            lines.append(f"[on]  {status.flag.name}")
            lines.append(f"  {status.flag.description}")
            if status.override is not None:
                lines.append(f"  (Override: {status.override})")
            lines.append("")

        lines.append(f"Disabled Features ({len(disabled)}):")
        lines.append("-" * 60)
        for status in disabled:
            flag = status.flag
            lines.append(f"[off] {flag.name}")
            lines.append(f"  {flag.description}")
            if flag.requires_schema_version:
                suffix = "" if status.schema_available else " (not available)"
                lines.append(f"  Requires schema version: {flag.requires_schema_version}{suffix}")
            if flag.depends_on:
                lines.append(f"  Depends on: {', '.join(flag.depends_on)}")
            if flag.experimental:
                lines.append("  Experimental")
            if status.override is not None:
                lines.append(f"  (Override: {status.override})")
            lines.append("")
        lines.append(rule)
        return "\n".join(lines)

# features/__init__.py
"""Feature flags and schema readiness."""

from .feature_gate import DEFAULT_FLAGS, STABLE_FEATURES, FeatureGate
from .override_store import JsonOverrideStore
from .schema_checker import FEATURE_REQUIREMENTS, SchemaCompatibilityChecker

__all__ = [
    "DEFAULT_FLAGS",
    "FEATURE_REQUIREMENTS",
    "STABLE_FEATURES",
    "FeatureGate",
    "JsonOverrideStore",
    "SchemaCompatibilityChecker",
]

# core/errors.py
"""Error kinds and the exception hierarchy shared by the pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification recorded in audit entries and surfaced to callers."""

    NETWORK = "network"
    API = "api"
    PARSE = "parse"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT})


class InkwellError(Exception):
    """Base class for all orchestration errors."""


class ModelCallError(InkwellError):
    """A single provider call (generation or embedding) failed."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        model_name: str | None = None,
        raw_snippet: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.model_name = model_name
        self.raw_snippet = raw_snippet
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.kind in RETRYABLE_KINDS:
            return True
        # Rate limiting and temporary unavailability are provider-side transients.
        return self.kind == ErrorKind.API and self.status_code in {429, 503}

    def details(self) -> dict[str, Any]:
        details: dict[str, Any] = {"model": self.model_name}
        if self.status_code is not None:
            details["status_code"] = self.status_code
        if self.raw_snippet:
            details["raw_snippet"] = self.raw_snippet
        return details


class EmbeddingUnavailableError(ModelCallError):
    """The semantic fingerprint could not be computed."""


class QualityRejectedError(InkwellError):
    """Output failed the acceptance gate after repair."""

    def __init__(self, message: str, violations: list[Any] | None = None) -> None:
        super().__init__(message)
        self.kind = ErrorKind.VALIDATION
        self.violations = violations or []


class AuditWriteError(InkwellError):
    """The append-only audit record could not be persisted."""


class CacheCorruptionError(InkwellError):
    """A cache row could not be decoded."""


class FeatureDependencyCycleError(InkwellError):
    """Registering a feature flag would create a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Feature dependency cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class GenerationFailedError(InkwellError):
    """Terminal failure of a generation request, as reported to the caller."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        execution_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.execution_id = execution_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "errorKind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

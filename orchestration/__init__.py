# orchestration/__init__.py
"""Request pipeline and the service facade used by upstream collaborators."""

from .generation_pipeline import GenerationPipeline
from .retry_policy import RetryPolicy
from .service_layer import GenerationService

__all__ = ["GenerationPipeline", "GenerationService", "RetryPolicy"]

# config.py
"""Configuration settings for the Inkwell generation orchestration layer.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class InkwellSettings(BaseSettings):
    """Full configuration for the Inkwell orchestration layer."""

    # API and Model Configuration
    OLLAMA_EMBED_URL: str = "http://127.0.0.1:11434"
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"

    EMBEDDING_MODEL: str = "nomic-embed-text:latest"
    EXPECTED_EMBEDDING_DIM: int = 768
    EMBEDDING_DTYPE: str = "float32"

    # Model tiers
    SMALL_MODEL: str = "Qwen3-4B"
    LARGE_MODEL: str = "Qwen3-14B"
    SMALL_MODEL_VERSION: str = "latest"
    LARGE_MODEL_VERSION: str = "latest"
    VERIFICATION_MODEL: str | None = None
    REPAIR_MODEL: str | None = None

    # Pricing (currency units per 1k tokens)
    SMALL_MODEL_COST_PER_1K: float = 0.0005
    LARGE_MODEL_COST_PER_1K: float = 0.004
    DEFAULT_COST_PER_1K: float = 0.002

    # Generation defaults
    TEMPERATURE_DEFAULT: float = 0.8
    TEMPERATURE_VERIFICATION: float = 0.0
    TEMPERATURE_REPAIR: float = 0.4
    LLM_TOP_P: float = 0.8
    MAX_GENERATION_TOKENS: int = 4096
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10
    EMBEDDING_CACHE_SIZE: int = 128

    # Timeouts, concurrency and retries
    HTTPX_TIMEOUT: float = 600.0
    MODEL_CALL_TIMEOUT_SECONDS: float = 180.0
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    MAX_CONCURRENT_LLM_CALLS: int = 4
    MAX_GENERATION_RETRIES: int = 3
    RETRY_DELAY_SECONDS: float = 1.0
    MAX_RETRY_DELAY_SECONDS: float = 10.0

    # Cache
    CACHE_TTL_DAYS: int = 30
    SEMANTIC_SIMILARITY_THRESHOLD: float = 0.98
    MIN_QUALITY_TO_CACHE: float = 70.0
    SEMANTIC_CANDIDATE_LIMIT: int = 100

    # Routing
    ROUTING_THRESHOLD: float = 0.5
    LONG_PROMPT_CHARS: int = 12000
    ROUTING_WEIGHT_CONTENT_LENGTH: float = 0.30
    ROUTING_WEIGHT_STYLE_COMPLEXITY: float = 0.25
    ROUTING_WEIGHT_SMALL_FAILURE_RATE: float = 0.35
    ROUTING_WEIGHT_CONSTRAINT_LOAD: float = 0.20
    ROUTING_WEIGHT_BUDGET: float = -0.10

    # Quality
    QUALITY_WEIGHT_COMPLETENESS: float = 0.35
    QUALITY_WEIGHT_CONSISTENCY: float = 0.30
    QUALITY_WEIGHT_COHERENCE: float = 0.20
    QUALITY_WEIGHT_FLUENCY: float = 0.15
    MIN_ACCEPTABLE_QUALITY: float = 40.0
    MIN_PARAGRAPHS: int = 3
    MAX_PARAGRAPH_CHARS: int = 1200
    MAX_DIALOGUE_RATIO: float = 0.7
    REPETITION_NGRAM_SIZE: int = 4
    REPETITION_THRESHOLD: int = 3
    CLICHE_SIMILARITY_THRESHOLD: float = 90.0
    REPAIR_MIN_SIMILARITY: float = 40.0

    # Durable store
    BASE_OUTPUT_DIR: str = "inkwell_output"
    DATABASE_FILE: str = "inkwell.db"
    REQUIRED_SCHEMA_VERSION: str = "0004"
    SCHEMA_CHECK_TTL_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL_STR: str = Field("INFO", alias="INKWELL_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "inkwell_run.log"
    ENABLE_RICH_LOGGING: bool = True

    @model_validator(mode="after")
    def set_dynamic_model_defaults(self) -> InkwellSettings:
        if self.VERIFICATION_MODEL is None:
            self.VERIFICATION_MODEL = self.SMALL_MODEL
        if self.REPAIR_MODEL is None:
            self.REPAIR_MODEL = self.SMALL_MODEL
        return self

    @model_validator(mode="after")
    def check_quality_weights(self) -> InkwellSettings:
        total = (
            self.QUALITY_WEIGHT_COMPLETENESS
            + self.QUALITY_WEIGHT_CONSISTENCY
            + self.QUALITY_WEIGHT_COHERENCE
            + self.QUALITY_WEIGHT_FLUENCY
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Quality dimension weights must sum to 1.0, got {total}")
        return self

    @model_validator(mode="after")
    def warn_placeholder_key(self) -> InkwellSettings:
        if self.OPENAI_API_KEY in {"", "nope"}:
            logger.warning(
                "OPENAI_API_KEY is a placeholder; model calls will likely be rejected."
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )


settings = InkwellSettings()

DATABASE_PATH = (
    settings.DATABASE_FILE
    if os.path.isabs(settings.DATABASE_FILE)
    else os.path.join(settings.BASE_OUTPUT_DIR, settings.DATABASE_FILE)
)

# core/usage.py
from __future__ import annotations

from dataclasses import dataclass

from config import settings


@dataclass
class TokenUsage:
    """LLM token usage metrics."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0

    def add(self, usage: TokenUsage | dict[str, int] | None) -> None:
        """Accumulate usage values from another instance or dictionary."""
        if not usage:
            return
        if isinstance(usage, TokenUsage):
            self.prompt_tokens += usage.prompt_tokens
            self.completion_tokens += usage.completion_tokens
            self.total_tokens += usage.total_tokens
            self.cost += usage.cost
        else:
            self.prompt_tokens += usage.get("prompt_tokens", 0)
            self.completion_tokens += usage.get("completion_tokens", 0)
            self.total_tokens += usage.get("total_tokens", 0)

    def get_if_used(self) -> dict[str, int] | None:
        """Return usage dict only if any tokens were accumulated."""
        if self.prompt_tokens or self.completion_tokens or self.total_tokens:
            return {
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "total_tokens": self.total_tokens,
            }
        return None

    @classmethod
    def from_response(
        cls, usage: dict[str, int] | None, model_name: str
    ) -> TokenUsage:
        """Build a priced usage record from a provider ``usage`` payload."""
        record = cls()
        record.add(usage)
        if not record.total_tokens:
            record.total_tokens = record.prompt_tokens + record.completion_tokens
        record.cost = price_tokens(record.total_tokens, model_name)
        return record


def cost_per_1k(model_name: str) -> float:
    """Price per thousand tokens for a configured model tier."""
    if model_name == settings.SMALL_MODEL:
        return settings.SMALL_MODEL_COST_PER_1K
    if model_name == settings.LARGE_MODEL:
        return settings.LARGE_MODEL_COST_PER_1K
    return settings.DEFAULT_COST_PER_1K


def price_tokens(total_tokens: int, model_name: str) -> float:
    return round(total_tokens / 1000.0 * cost_per_1k(model_name), 6)

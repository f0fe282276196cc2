# core/llm_interface.py
"""
Handles direct interactions with language models (OpenAI-compatible chat
completions) and embedding models (via Ollama). Each call is a single,
timeout-bounded attempt; failures are raised as classified
``ModelCallError`` instances and retry policy lives with the caller.

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

# Standard library imports
import asyncio
import functools
import json
import re
from typing import Any, Protocol, runtime_checkable

# Third-party imports
import httpx
import numpy as np
import structlog
import tiktoken
from async_lru import alru_cache

# Local imports
from config import settings
from core.errors import EmbeddingUnavailableError, ErrorKind, ModelCallError
from core.usage import TokenUsage
from models.generation_models import ModelResponse

logger = structlog.get_logger(__name__)

_RAW_SNIPPET_CHARS = 200


@runtime_checkable
class ModelClient(Protocol):
    """What the pipeline needs from a model provider."""

    async def generate(
        self, model_name: str, prompt: str, parameters: dict[str, Any] | None = None
    ) -> ModelResponse: ...

    async def embed(self, text: str) -> np.ndarray: ...


def _completion_token_param(api_base: str) -> str:
    """Return the token count parameter expected by the provider."""
    if "api.openai.com" in api_base or "api.anthropic.com" in api_base:
        return "max_completion_tokens"
    return "max_tokens"


@functools.lru_cache(maxsize=settings.TOKENIZER_CACHE_SIZE)
def _get_tokenizer(model_name: str) -> tiktoken.Encoding | None:
    """
    Gets a tiktoken encoder for the given model name, with caching.
    Tries model-specific encoding, then a default, then returns None.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            logger.debug(
                "No direct tiktoken encoding; using default",
                model=model_name,
                encoding=settings.TIKTOKEN_DEFAULT_ENCODING,
            )
            return tiktoken.get_encoding(settings.TIKTOKEN_DEFAULT_ENCODING)
    except (KeyError, ValueError) as exc:
        logger.error(
            "Default tiktoken encoding unavailable; falling back to character heuristic",
            model=model_name,
            error=str(exc),
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """
    Counts the number of tokens in a string for a given model.
    Uses tiktoken with caching and a character-based fallback.
    """
    if not text:
        return 0

    encoder = _get_tokenizer(model_name)
    if encoder:
        return len(encoder.encode(text, allowed_special="all"))
    return int(len(text) / settings.FALLBACK_CHARS_PER_TOKEN)


def classify_transport_error(exc: BaseException, model_name: str) -> ModelCallError:
    """Map an exception raised during a provider call to a ``ModelCallError``."""
    if isinstance(exc, ModelCallError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ModelCallError(
            ErrorKind.TIMEOUT, f"Call to '{model_name}' timed out", model_name
        )
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return ModelCallError(
            ErrorKind.API,
            f"Provider returned HTTP {response.status_code} for '{model_name}'",
            model_name,
            raw_snippet=response.text[:_RAW_SNIPPET_CHARS],
            status_code=response.status_code,
        )
    if isinstance(exc, httpx.RequestError):
        return ModelCallError(
            ErrorKind.NETWORK, f"Transport error calling '{model_name}': {exc}", model_name
        )
    if isinstance(exc, (json.JSONDecodeError, KeyError, TypeError, ValueError)):
        return ModelCallError(
            ErrorKind.PARSE,
            f"Could not decode response from '{model_name}': {type(exc).__name__}: {exc}",
            model_name,
        )
    return ModelCallError(ErrorKind.UNKNOWN, f"{type(exc).__name__}: {exc}", model_name)


class LLMService:
    """Utility class for interacting with LLM and embedding endpoints."""

    def __init__(self, timeout: float = settings.HTTPX_TIMEOUT):
        # Use a single async client for all requests to reuse connections
        self._client = httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_LLM_CALLS)
        self.request_count = 0
        logger.info(
            "LLMService initialized",
            concurrency_limit=settings.MAX_CONCURRENT_LLM_CALLS,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _validate_embedding(
        self,
        embedding_list: list[float | int],
        expected_dim: int,
        dtype: str,
    ) -> np.ndarray | None:
        """Helper to validate and convert a list to a 1D numpy embedding."""
        try:
            embedding = np.array(embedding_list).astype(dtype)
        except (TypeError, ValueError) as e:
            logger.error("Failed to convert embedding list to numpy array", error=str(e))
            return None
        if embedding.ndim > 1:
            embedding = embedding.flatten()
        if embedding.shape == (expected_dim,):
            return embedding
        logger.error(
            "Embedding dimension mismatch",
            expected=expected_dim,
            got=embedding.shape,
        )
        return None

    async def _post_embedding(self, text: str) -> np.ndarray:
        payload = {"model": settings.EMBEDDING_MODEL, "prompt": text}
        self.request_count += 1
        api_response = await self._client.post(
            f"{settings.OLLAMA_EMBED_URL}/api/embeddings", json=payload
        )
        api_response.raise_for_status()
        data = api_response.json()

        candidates = []
        if isinstance(data.get("embedding"), list):
            candidates.append(data["embedding"])
        candidates.extend(
            value
            for key, value in data.items()
            if key != "embedding"
            and isinstance(value, list)
            and all(isinstance(item, float | int) for item in value)
        )
        for candidate in candidates:
            embedding = self._validate_embedding(
                candidate, settings.EXPECTED_EMBEDDING_DIM, settings.EMBEDDING_DTYPE
            )
            if embedding is not None:
                return embedding
        raise EmbeddingUnavailableError(
            ErrorKind.PARSE,
            "No suitable embedding list found in provider response",
            settings.EMBEDDING_MODEL,
            raw_snippet=api_response.text[:_RAW_SNIPPET_CHARS],
        )

    @alru_cache(maxsize=settings.EMBEDDING_CACHE_SIZE)
    async def embed(self, text: str) -> np.ndarray:
        """Return an embedding for ``text`` or raise ``EmbeddingUnavailableError``."""
        if not text or not text.strip():
            raise EmbeddingUnavailableError(
                ErrorKind.VALIDATION, "Cannot embed empty text", settings.EMBEDDING_MODEL
            )
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self._post_embedding(text.strip()),
                    timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
                )
            except EmbeddingUnavailableError:
                raise
            except Exception as exc:
                error = classify_transport_error(exc, settings.EMBEDDING_MODEL)
                logger.warning(
                    "Embedding call failed",
                    kind=error.kind.value,
                    error=error.message,
                )
                raise EmbeddingUnavailableError(
                    error.kind,
                    error.message,
                    error.model_name,
                    raw_snippet=error.raw_snippet,
                    status_code=error.status_code,
                ) from exc

    async def _post_chat(
        self, payload: dict[str, Any], headers: dict[str, str]
    ) -> tuple[str, dict[str, int] | None, str]:
        response = await self._client.post(
            f"{settings.OPENAI_API_BASE}/chat/completions",
            json=payload,
            headers=headers,
        )
        response.raise_for_status()
        raw = response.text
        data = response.json()
        choices = data.get("choices")
        if not choices:
            raise ModelCallError(
                ErrorKind.PARSE,
                f"Response from '{payload['model']}' has no choices",
                payload["model"],
                raw_snippet=raw[:_RAW_SNIPPET_CHARS],
            )
        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str):
            raise ModelCallError(
                ErrorKind.PARSE,
                f"Response from '{payload['model']}' has no message content",
                payload["model"],
                raw_snippet=raw[:_RAW_SNIPPET_CHARS],
            )
        return content, data.get("usage"), raw

    async def generate(
        self,
        model_name: str,
        prompt: str,
        parameters: dict[str, Any] | None = None,
    ) -> ModelResponse:
        """Make one timeout-bounded chat completion call."""
        params = dict(parameters or {})
        timeout = float(params.pop("timeout", settings.MODEL_CALL_TIMEOUT_SECONDS))
        auto_clean = bool(params.pop("auto_clean_response", True))

        token_param_name = _completion_token_param(settings.OPENAI_API_BASE)
        payload: dict[str, Any] = {
            "model": model_name,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": params.pop("temperature", settings.TEMPERATURE_DEFAULT),
            "top_p": params.pop("top_p", settings.LLM_TOP_P),
            token_param_name: params.pop("max_tokens", settings.MAX_GENERATION_TOKENS),
            "stream": False,
        }
        payload.update(params)
        headers = {
            "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        }

        async with self._semaphore:
            self.request_count += 1
            logger.debug(
                "Calling LLM",
                model=model_name,
                prompt_tokens_est=count_tokens(prompt, model_name),
                timeout=timeout,
            )
            try:
                text, usage_data, raw = await asyncio.wait_for(
                    self._post_chat(payload, headers), timeout=timeout
                )
            except Exception as exc:
                error = classify_transport_error(exc, model_name)
                logger.warning(
                    "LLM call failed",
                    model=model_name,
                    kind=error.kind.value,
                    error=error.message,
                )
                if error is exc:
                    raise
                raise error from exc

        if not usage_data:
            usage_data = {
                "prompt_tokens": count_tokens(prompt, model_name),
                "completion_tokens": count_tokens(text, model_name),
            }
        usage = TokenUsage.from_response(usage_data, model_name)
        logger.info(
            "LLM usage",
            model=model_name,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=usage.cost,
        )
        if auto_clean:
            text = self.clean_model_response(text)
        return ModelResponse(
            text=text,
            model_name=model_name,
            usage=usage,
            raw_snippet=raw[:_RAW_SNIPPET_CHARS],
        )

    def clean_model_response(self, text: str) -> str:
        """Cleans common artifacts from LLM text responses, including content within <think> tags and normalizes newlines."""
        if not isinstance(text, str):
            return ""

        cleaned_text = text
        for tag_name in ("think", "thinking", "reasoning", "analysis", "plan"):
            cleaned_text = re.sub(
                rf"<\s*{tag_name}\s*>.*?<\s*/\s*{tag_name}\s*>",
                "",
                cleaned_text,
                flags=re.DOTALL | re.IGNORECASE,
            )
            cleaned_text = re.sub(
                rf"<\s*/?\s*{tag_name}\s*/?\s*>", "", cleaned_text, flags=re.IGNORECASE
            )

        cleaned_text = re.sub(
            r"```(?:[a-zA-Z0-9_-]+)?\s*(.*?)\s*```",
            r"\1",
            cleaned_text,
            flags=re.DOTALL,
        )

        leading_patterns = [
            r"^\s*(Okay,\s*)?(Sure,\s*)?(Here's|Here is)\s+(the|your)\s+[\w\s]+?:\s*",
            r"^\s*Certainly! Here is the text:\s*",
            r"^\s*(?:Output|Result|Response|Answer)\s*:\s*",
        ]
        trailing_patterns = [
            r"\s*Let me know if you (need|have) any(thing else| other questions| further revisions| adjustments)\b.*?\.?[^\w\n]*$",
            r"\s*I hope this (meets your expectations|helps|is what you were looking for)\b.*?\.?[^\w\n]*$",
            r"\s*Is there anything else I can help you with\b.*?(\?|.)[^\w\n]*$",
        ]
        for pattern_str in leading_patterns:
            while True:
                new_text = re.sub(
                    pattern_str, "", cleaned_text, count=1, flags=re.IGNORECASE
                ).strip()
                if new_text == cleaned_text:
                    break
                cleaned_text = new_text
        for pattern_str in trailing_patterns:
            cleaned_text = re.sub(
                pattern_str, "", cleaned_text, count=1, flags=re.IGNORECASE
            ).strip()

        final_text = cleaned_text.strip()
        return re.sub(r"\n{3,}", "\n\n", final_text)


import asyncio
import json

import httpx
import numpy as np
import pytest

from config import settings
from core.errors import EmbeddingUnavailableError, ErrorKind, ModelCallError
from core.llm_interface import LLMService, classify_transport_error, count_tokens


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch):
    monkeypatch.setattr("core.llm_interface._get_tokenizer", lambda model_name: None)


def mock_service(handler) -> LLMService:
    service = LLMService()
    service._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return service


def test_classify_transport_errors():
    request = httpx.Request("POST", "http://llm/v1/chat/completions")

    timeout = classify_transport_error(asyncio.TimeoutError(), "m")
    assert timeout.kind == ErrorKind.TIMEOUT and timeout.retryable

    network = classify_transport_error(httpx.ConnectError("refused", request=request), "m")
    assert network.kind == ErrorKind.NETWORK

    response = httpx.Response(429, text="slow down", request=request)
    limited = classify_transport_error(
        httpx.HTTPStatusError("429", request=request, response=response), "m"
    )
    assert limited.kind == ErrorKind.API
    assert limited.status_code == 429
    assert limited.raw_snippet == "slow down"
    assert limited.retryable

    bad = httpx.Response(400, text="nope", request=request)
    rejected = classify_transport_error(httpx.HTTPStatusError("400", request=request, response=bad), "m")
    assert not rejected.retryable

    parse = classify_transport_error(json.JSONDecodeError("bad", "{", 0), "m")
    assert parse.kind == ErrorKind.PARSE and not parse.retryable

    assert classify_transport_error(RuntimeError("boom"), "m").kind == ErrorKind.UNKNOWN


def test_count_tokens_handles_empty_text():
    assert count_tokens("", "any-model") == 0
    assert count_tokens("The abbey bells rang twice.", "any-model") > 0


@pytest.mark.asyncio
async def test_generate_returns_cleaned_text_and_priced_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "<think>plan</think>Mara lit the lamp."}}],
                "usage": {"prompt_tokens": 600, "completion_tokens": 400, "total_tokens": 1000},
            },
        )

    service = mock_service(handler)
    response = await service.generate(settings.SMALL_MODEL, "Write it.", {"temperature": 0.2, "seed": 7})
    await service.aclose()

    assert seen["path"].endswith("/chat/completions")
    assert seen["body"]["temperature"] == 0.2
    assert seen["body"]["seed"] == 7
    assert response.text == "Mara lit the lamp."
    assert response.usage.total_tokens == 1000
    assert response.usage.cost == pytest.approx(settings.SMALL_MODEL_COST_PER_1K)


@pytest.mark.asyncio
async def test_generate_raises_classified_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    service = mock_service(handler)
    with pytest.raises(ModelCallError) as excinfo:
        await service.generate(settings.LARGE_MODEL, "Write it.")
    await service.aclose()

    assert excinfo.value.kind == ErrorKind.API
    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_generate_without_choices_is_a_parse_error():
    service = mock_service(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(ModelCallError) as excinfo:
        await service.generate(settings.SMALL_MODEL, "Write it.")
    await service.aclose()
    assert excinfo.value.kind == ErrorKind.PARSE


@pytest.mark.asyncio
async def test_embed_validates_dimension():
    vector = [0.5] * settings.EXPECTED_EMBEDDING_DIM

    def handler(request: httpx.Request) -> httpx.Response:
        text = json.loads(request.content)["prompt"]
        if text == "short vector":
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})
        return httpx.Response(200, json={"embedding": vector})

    service = mock_service(handler)
    embedding = await service.embed("flooded abbey")
    assert isinstance(embedding, np.ndarray)
    assert embedding.shape == (settings.EXPECTED_EMBEDDING_DIM,)

    with pytest.raises(EmbeddingUnavailableError) as excinfo:
        await service.embed("short vector")
    assert excinfo.value.kind == ErrorKind.PARSE

    with pytest.raises(EmbeddingUnavailableError):
        await service.embed("   ")
    await service.aclose()


def test_clean_model_response_strips_wrappers():
    service = LLMService()
    raw = "Here is the scene:\n```\nMara waited.\n\n\n\nTomas came.\n```\nI hope this helps!"
    assert service.clean_model_response(raw) == "Mara waited.\n\nTomas came."

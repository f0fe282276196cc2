import numpy as np
import pytest

from caching.fingerprinter import (
    Fingerprinter,
    exact_hash,
    mask_variables,
    semantic_hash,
    template_hash,
)
from core.errors import EmbeddingUnavailableError, ErrorKind
from fakes import ScriptedModelClient, make_request


def test_exact_hash_ignores_context_but_not_parameters():
    base = make_request()
    other_scene = make_request(context={"project_id": "proj-2", "scene_id": "sc-9"})
    warmer = make_request(parameters={"temperature": 0.9})

    assert exact_hash(base) == exact_hash(other_scene)
    assert exact_hash(base) != exact_hash(warmer)


def test_exact_hash_is_stable_for_reordered_parameters():
    first = make_request(parameters={"temperature": 0.7, "top_p": 0.9})
    second = make_request(parameters={"top_p": 0.9, "temperature": 0.7})
    assert exact_hash(first) == exact_hash(second)


def test_mask_variables_prefers_longest_value():
    masked = mask_variables(
        "Mara Vell meets Mara at dusk.", {"full": "Mara Vell", "short": "Mara"}
    )
    assert masked == "{{full}} meets {{short}} at dusk."


def test_template_hash_ignores_variable_fill_ins():
    first = make_request(
        rendered_prompt="Write scene 3 where Mara finds the ledger.",
        template_variables={"character": "Mara"},
    )
    second = make_request(
        rendered_prompt="Write scene 14 where Tomas finds the ledger.",
        template_variables={"character": "Tomas"},
    )
    different_version = make_request(
        rendered_prompt="Write scene 3 where Mara finds the ledger.",
        template_variables={"character": "Mara"},
        template_version="4",
    )

    assert template_hash(first) == template_hash(second)
    assert template_hash(first) != template_hash(different_version)


def test_semantic_hash_folds_float_noise():
    vector = np.array([0.6, 0.8, 0.0], dtype=np.float32)
    noisy = vector + np.array([1e-7, -1e-7, -0.0], dtype=np.float32)
    assert semantic_hash(vector) == semantic_hash(noisy)


@pytest.mark.asyncio
async def test_fingerprint_enhanced_produces_all_keys():
    client = ScriptedModelClient()
    fingerprints = await Fingerprinter(client).fingerprint(make_request())

    assert fingerprints.exact_hash
    assert fingerprints.template_hash
    assert fingerprints.has_semantic
    assert np.isclose(np.linalg.norm(fingerprints.semantic.vector), 1.0)
    assert fingerprints.semantic_error is None


@pytest.mark.asyncio
async def test_fingerprint_basic_never_embeds():
    client = ScriptedModelClient()
    fingerprints = await Fingerprinter(client).fingerprint(make_request(), enhanced=False)

    assert client.embed_calls == 0
    assert fingerprints.semantic is None
    assert fingerprints.template_hash is None


@pytest.mark.asyncio
async def test_fingerprint_records_embedding_failure():
    client = ScriptedModelClient(
        embed_error=EmbeddingUnavailableError(ErrorKind.NETWORK, "connection refused")
    )
    fingerprints = await Fingerprinter(client).fingerprint(make_request())

    assert fingerprints.semantic is None
    assert fingerprints.template_hash is not None
    assert fingerprints.semantic_error == "network: connection refused"


@pytest.mark.asyncio
async def test_zero_vector_is_not_a_usable_signature():
    class ZeroEmbedder(ScriptedModelClient):
        async def embed(self, text):
            return np.zeros(8, dtype=np.float32)

    fingerprints = await Fingerprinter(ZeroEmbedder()).fingerprint(make_request())
    assert fingerprints.semantic is None
    assert fingerprints.semantic_error.startswith("parse")

import hashlib

import numpy as np

from core.usage import TokenUsage
from models.generation_models import GenerationContext, GenerationRequest, ModelResponse

GOOD_TEXT = (
    "Mara crossed the flooded courtyard before dawn, boots sinking into silt "
    "that smelled of iron and rain. The lanterns along the wall had guttered "
    "out hours ago.\n\n"
    "Inside the archive, Tomas was already sorting ledgers by candlelight. He "
    "looked up, startled, then pushed a chipped mug of tea across the table "
    "without a word.\n\n"
    "They worked until the bells rang for morning prayers. By then the missing "
    "page had turned up inside a bundle of tax receipts, folded twice and "
    "stained with wax."
)


def bag_of_words(text: str, dim: int = 64) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float32)
    for word in text.lower().split():
        index = int(hashlib.sha1(word.encode("utf-8")).hexdigest(), 16) % dim
        vector[index] += 1.0
    return vector


class ScriptedModelClient:
    """Replays scripted outputs per model; the last item repeats."""

    def __init__(self, scripts=None, embed_error=None):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.embed_error = embed_error
        self.calls = []
        self.embed_calls = 0

    async def generate(self, model_name, prompt, parameters=None):
        self.calls.append((model_name, prompt, dict(parameters or {})))
        queue = self.scripts.get(model_name)
        if not queue:
            raise AssertionError(f"No scripted output for {model_name}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        usage = TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30, cost=0.01)
        return ModelResponse(text=item, model_name=model_name, usage=usage)

    async def embed(self, text):
        self.embed_calls += 1
        if self.embed_error is not None:
            raise self.embed_error
        return bag_of_words(text)

    @property
    def models_called(self):
        return [call[0] for call in self.calls]


def make_request(prompt="Write the archive scene.\nSetting: the flooded abbey.", **overrides):
    data = {
        "template_id": "scene-draft",
        "template_version": "3",
        "rendered_prompt": prompt,
        "context": GenerationContext(project_id="proj-1", chapter_id="ch-1", scene_id="sc-1"),
        "parameters": {"temperature": 0.7},
    }
    data.update(overrides)
    return GenerationRequest(**data)

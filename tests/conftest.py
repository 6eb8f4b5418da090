import asyncio
import re

import pytest

from libris.config import Config
from libris.embeddings import Embedder
from libris.engine import RagEngine
from libris.health import HealthTracker
from libris.llm import ChatDelta, ToolCallFragment
from libris.models import Chunk
from libris.store import HybridStore

PARIS = "Paris is the capital of France."
BERLIN = "Berlin is the capital of Germany."

# Three sentences about Paris, then two on an unrelated topic
TOPIC_SHIFT = (
    "Paris is in France. Paris is lovely. Paris has museums. "
    "Quantum flux capacitors hum. Quantum flux capacitors glow."
)


def qa_model_reply(prompt):
    """complete() answers for QA extraction (fenced JSON) and question rephrasing."""
    if "question-answer pairs" in prompt:
        return '```json\n[{"question": "How do I deploy?", "answer": "Run make deploy."}]\n```'
    return 'Sure: ["deploy steps", "How to ship it"]'


class FakeEmbeddingFunction:
    """Bag-of-words vectors. Every new token gets its own dimension, so
    similar wording means a small L2 distance and nothing collides."""

    def __init__(self, dim: int = 64):
        self.dim = dim
        self.vocab: dict[str, int] = {}
        self.calls = 0

    def __call__(self, texts):
        self.calls += 1
        vectors = []
        for text in texts:
            vec = [0.0] * self.dim
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                if token not in self.vocab:
                    if len(self.vocab) >= self.dim:
                        raise RuntimeError("fake vocabulary exhausted")
                    self.vocab[token] = len(self.vocab)
                vec[self.vocab[token]] += 1.0
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            vectors.append([x / norm for x in vec])
        return vectors


class FakeChatModel:
    """Scripted stand-in for ChatModel.

    stream() yields the configured text pieces, then tool-call fragments.
    complete() answers with *complete_answer* (a string, or a callable
    taking the prompt; a raised exception propagates).
    """

    def __init__(self, pieces=("Hello", " world"), tool_fragments=(), complete_answer="yes",
                 on_piece=None):
        self.pieces = list(pieces)
        self.tool_fragments = list(tool_fragments)
        self.complete_answer = complete_answer
        self.on_piece = on_piece
        self.stream_prompts: list[str] = []
        self.complete_prompts: list[str] = []
        self.tools = None

    async def complete(self, prompt: str) -> str:
        self.complete_prompts.append(prompt)
        if callable(self.complete_answer):
            return self.complete_answer(prompt)
        return self.complete_answer

    async def stream(self, messages, tools=None):
        self.stream_prompts.append(messages[-1]["content"])
        self.tools = tools
        for i, piece in enumerate(self.pieces):
            await asyncio.sleep(0)
            if self.on_piece is not None:
                self.on_piece(i)
            yield ChatDelta(text=piece)
        for fragment in self.tool_fragments:
            yield ChatDelta(tool_fragments=[fragment])


class FakeWebSearch:
    def __init__(self, text="Paris has been the capital since 987.", error=None):
        self.text = text
        self.error = error
        self.queries: list[str] = []

    async def run(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.text


def weather_fragments():
    return [
        ToolCallFragment(index=0, id="call_1", name="show_weather_card", arguments='{"city": "Par'),
        ToolCallFragment(index=0, arguments='is", "temp": 21, "condition": "sunny", '),
        ToolCallFragment(index=0, arguments='"icon": "sunny"}'),
    ]


def collect(events):
    """Drain an async event iterator into a list."""
    async def _drain():
        return [event async for event in events]
    return asyncio.run(_drain())


@pytest.fixture
def embedding_fn():
    return FakeEmbeddingFunction()


@pytest.fixture
def embedder(embedding_fn):
    return Embedder(embedding_fn, "fake-bow")


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=str(tmp_path / "data"), embedding_model="fake-bow")


@pytest.fixture
def store(config, embedder):
    s = HybridStore(config.db_path, embedder).initialize()
    yield s
    s.close()


@pytest.fixture
def capitals():
    return [
        Chunk(content=PARIS, source="geo/france.md", filename="france.md"),
        Chunk(content=BERLIN, source="geo/germany.md", filename="germany.md"),
    ]


@pytest.fixture
def health():
    return HealthTracker()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def engine(config, embedding_fn, chat_model, health):
    e = RagEngine(
        config,
        embedding_fn=embedding_fn,
        chat_model_factory=lambda provider: chat_model,
        web_search=FakeWebSearch(),
        health=health,
    )
    yield e
    e.close()

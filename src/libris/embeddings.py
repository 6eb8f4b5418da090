# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Embedding provider – local sentence-transformers model or OpenAI,
both through Chroma's embedding function adapters.

Any callable ``list[str] -> list[vector]`` can be injected instead
(tests use a deterministic in-process function).
"""
from typing import Callable, Optional, Sequence

from chromadb.utils import embedding_functions

from .config import Config
from .errors import EmbeddingError

PROBE_TEXT = "dimension probe"

EmbeddingFunction = Callable[[list[str]], Sequence[Sequence[float]]]


def create_embedding_function(config: Config) -> EmbeddingFunction:
    if config.embedding_provider == "local":
        return embedding_functions.SentenceTransformerEmbeddingFunction(
            model_name=config.embedding_model
        )
    return embedding_functions.OpenAIEmbeddingFunction(
        api_key=config.openai_api_key,
        model_name=config.openai_embedding_model,
    )


class Embedder:
    def __init__(self, embedding_fn: EmbeddingFunction, model_name: str = ""):
        self._ef = embedding_fn
        self.model_name = model_name

    @classmethod
    def from_config(cls, config: Config, embedding_fn: Optional[EmbeddingFunction] = None) -> "Embedder":
        ef = embedding_fn or create_embedding_function(config)
        return cls(ef, config.active_embedding_model)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self._ef(list(texts))
        except Exception as e:
            raise EmbeddingError(f"Embedding failed for {len(texts)} texts: {e}") from e
        if vectors is None or len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding function returned {0 if vectors is None else len(vectors)} "
                f"vectors for {len(texts)} texts"
            )
        return [[float(x) for x in v] for v in vectors]

    def embed_query(self, text: str) -> list[float]:
        return self.embed_documents([text])[0]

    def probe_dimension(self) -> int:
        dim = len(self.embed_query(PROBE_TEXT))
        if dim == 0:
            raise EmbeddingError("Embedding function returned an empty vector")
        return dim

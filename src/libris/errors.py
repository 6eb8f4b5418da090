# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Error taxonomy.

Storage/embedding errors are fatal to one ingest batch but never corrupt
existing data. Rerank and web-search errors are recoverable: the pipeline
degrades instead of failing the question. GenerationAborted is the expected
outcome of a user stop and must not be shown as an error.
"""


class LibrisError(Exception):
    """Base class for all engine errors."""


class StorageInitError(LibrisError):
    """Store could not be opened, probed or migrated. Corpus unusable."""


class StorageWriteError(LibrisError):
    """Write transaction rolled back. Safe to retry the whole batch."""


class StorageReadError(LibrisError):
    """A query against the store failed. Nothing was changed."""


class EmbeddingError(LibrisError):
    """Vector computation failed. Nothing was written."""


class RerankError(LibrisError):
    """Reranking failed. Callers fall back to the pre-rerank order."""


class RerankTimeoutError(RerankError):
    pass


class WorkerCrashedError(RerankError):
    pass


class WorkerUnavailableError(RerankError):
    """Worker could not be (re)spawned twice in a row. Terminal."""


class WebSearchError(LibrisError):
    pass


class GenerationError(LibrisError):
    """The language model call or the answer pipeline failed."""


class GenerationAborted(LibrisError):
    """Generation was cancelled by the user or by a newer question."""

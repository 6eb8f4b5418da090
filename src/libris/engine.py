# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
RagEngine – the one object the surfaces talk to.

Owns the store, embedding cache, reranker client and orchestrator, all
constructed once and injected downward.
"""
import asyncio
from typing import AsyncIterator, Iterable, Optional, Sequence

from .cache import EmbeddingCache
from .chunking import chunk_text, extract_qa_chunks
from .config import Config
from .embeddings import Embedder, EmbeddingFunction
from .errors import EmbeddingError, GenerationError, StorageInitError, StorageWriteError
from .health import HealthTracker
from .llm import get_chat_model
from .models import Chunk, HistoryEntry, RetrievalResult, StreamEvent
from .orchestrator import CancellationToken, ChatModelFactory, Orchestrator
from .projection import vector_positions
from .reranker import RerankerClient
from .store import HybridStore
from .websearch import DuckDuckGoSearch


class RagEngine:
    def __init__(
        self,
        config: Config,
        embedding_fn: Optional[EmbeddingFunction] = None,
        reranker: Optional[RerankerClient] = None,
        chat_model_factory: Optional[ChatModelFactory] = None,
        web_search: Optional[DuckDuckGoSearch] = None,
        health: Optional[HealthTracker] = None,
    ):
        self.config = config
        self.health = health or HealthTracker()
        self.embedder = Embedder.from_config(config, embedding_fn)
        self.store = HybridStore(config.db_path, self.embedder)
        try:
            self.store.initialize()
        except StorageInitError as e:
            self.health.record_store(False, str(e))
            raise
        self.health.record_store(True)

        self.cache = EmbeddingCache(self.embedder, capacity=config.embedding_cache_size)
        self.reranker = reranker or RerankerClient.from_config(config)
        self._chat_model_factory = chat_model_factory or (lambda provider: get_chat_model(config, provider))
        self.orchestrator = Orchestrator(
            config, self.store, self.cache,
            reranker=self.reranker,
            chat_model_factory=self._chat_model_factory,
            web_search=web_search,
            health=self.health,
        )

    # ── Ingestion ────────────────────────────────────────

    def ingest(self, chunks: Iterable[Chunk], replace: bool = True) -> dict:
        """Store chunks, one atomic batch per source. A failing source is
        reported and skipped; the others are still stored."""
        by_source: dict[str, list[Chunk]] = {}
        for chunk in chunks:
            by_source.setdefault(chunk.source, []).append(chunk)

        ingested: dict[str, int] = {}
        failed: list[dict] = []
        for source, batch in by_source.items():
            try:
                stored = self.store.add_chunks(batch, replace_sources=replace)
            except (EmbeddingError, StorageWriteError) as e:
                print(f"Warning: Failed to ingest {source}: {e}")
                failed.append({"file": source, "reason": str(e)})
                continue
            ingested[source] = len(stored)

        total = sum(ingested.values())
        self.health.record_ingest(not failed, chunks=total, sources=len(ingested), failed=failed)
        if ingested:
            print(f"Ingested {total} chunks from {len(ingested)} sources")
        return {
            "success": not failed,
            "sources": self.store.list_sources(),
            "ingested": ingested,
            "failed": failed,
        }

    async def ingest_text(self, source: str, text: str, replace: bool = True) -> dict:
        """Chunk already-extracted text and ingest it under *source*.

        Embedding, LLM calls and the store write all happen off the event
        loop, so streams served by the same loop keep flowing.
        """
        strategy = self.config.chunk_strategy
        try:
            if strategy == "llm_enhanced":
                chunks = await extract_qa_chunks(text, source, self._chat_model_factory(None))
            else:
                chunks = await asyncio.to_thread(
                    chunk_text, text, source,
                    strategy=strategy,
                    chunk_size=self.config.chunk_size,
                    chunk_overlap=self.config.chunk_overlap,
                    embed=self.embedder.embed_documents,
                    breakpoint_threshold=self.config.semantic_breakpoint_threshold,
                )
        except (EmbeddingError, GenerationError) as e:
            print(f"Warning: Failed to chunk {source}: {e}")
            return self._ingest_failed(source, str(e))
        if not chunks:
            return self._ingest_failed(source, "no text to ingest")
        return await asyncio.to_thread(self.ingest, chunks, replace)

    def _ingest_failed(self, source: str, reason: str) -> dict:
        failed = [{"file": source, "reason": reason}]
        self.health.record_ingest(False, chunks=0, sources=0, failed=failed)
        return {
            "success": False,
            "sources": self.store.list_sources(),
            "ingested": {},
            "failed": failed,
        }

    def list_sources(self) -> list[str]:
        return self.store.list_sources()

    def delete_source(self, path: str) -> list[str]:
        """Remove a source; returns the remaining sources."""
        self.store.delete_by_source(path)
        return self.store.list_sources()

    def vector_positions(self, query: Optional[str] = None) -> dict:
        """Stored vectors (plus the query's, if given) projected to 2-D."""
        pairs = self.store.all_vectors()
        query_vector = self.embedder.embed_query(query) if query and pairs else None
        return vector_positions(pairs, query, query_vector)

    # ── Questions ────────────────────────────────────────

    def ask(
        self,
        question: str,
        history: Optional[Sequence] = None,
        provider: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        record_history: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        return self.orchestrator.ask(
            question, history=history, provider=provider,
            token=token, record_history=record_history,
        )

    def stop_generation(self) -> bool:
        return self.orchestrator.stop_generation()

    async def search(self, query: str, k: Optional[int] = None) -> list[RetrievalResult]:
        """Retrieval only, no generation."""
        results = await self.orchestrator.retrieve(query, k=k)
        self.health.record_search(hit=bool(results))
        return results

    # ── History ──────────────────────────────────────────

    def add_history_entry(self, role: str, content: str) -> HistoryEntry:
        return self.store.add_history(role, content)

    def get_history(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        return self.store.get_history(limit)

    def clear_history(self):
        self.store.clear_history()
        self.orchestrator.reset_summary()

    # ── Status ───────────────────────────────────────────

    def status(self) -> dict:
        return {
            "store": self.store.stats,
            "consistent": self.store.is_consistent(),
            "reranker": self.reranker.status,
            "embedding_cache": {
                "size": len(self.cache),
                "capacity": self.cache.capacity,
                "hits": self.cache.hits,
                "misses": self.cache.misses,
            },
            "health": self.health.status,
        }

    def close(self):
        self.reranker.close()
        self.store.close()

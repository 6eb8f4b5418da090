# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Bounded query -> vector cache.

Eviction is by insertion order (oldest inserted key first); reads do not
reorder. Failures are never cached.
"""
import asyncio
import threading

from .embeddings import Embedder


class EmbeddingCache:
    def __init__(self, embedder: Embedder, capacity: int = 256):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._embedder = embedder
        self.capacity = capacity
        self._entries: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, query: str) -> bool:
        return query in self._entries

    def get(self, query: str) -> list[float] | None:
        with self._lock:
            return self._entries.get(query)

    def put(self, query: str, vector: list[float]) -> None:
        with self._lock:
            if query in self._entries:
                self._entries[query] = vector
                return
            self._entries[query] = vector
            while len(self._entries) > self.capacity:
                oldest = next(iter(self._entries))
                del self._entries[oldest]

    async def get_or_compute(self, query: str) -> list[float]:
        cached = self.get(query)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        vector = await asyncio.to_thread(self._embedder.embed_query, query)
        self.put(query, vector)
        return vector

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Question -> streamed, grounded answer.

Pipeline per question:
  1. query vector (embedding cache)
  2. candidates: retrieval_k, or retrieval_k * rerank_fetch_multiplier when reranking
  3. vector-only search, or vector + keyword fused with RRF
  4. optional cross-encoder rerank (falls back to retrieval order on error)
  5. vector-only results without rerank: drop distance >= similarity_threshold
  6. prompt from top-K chunks + history window (+ rolling summary)
  7. stream text; collect tool-call fragments
  8. StreamEnd with answer, sources and tool calls

With CRAG enabled, steps 2-5 are replaced by retrieve/grade/web-search.

Only one question is in flight: starting a new one cancels the previous
token. A cancelled stream raises GenerationAborted and writes no history.
"""
import asyncio
import threading
from typing import AsyncIterator, Callable, Optional, Sequence

from .cache import EmbeddingCache
from .config import Config
from .crag import CorrectiveRAG, build_generate_prompt
from .errors import GenerationAborted, LibrisError, RerankError
from .fusion import reciprocal_rank_fusion
from .health import HealthTracker
from .llm import ChatModel, ToolCallAccumulator, get_chat_model
from .memory import HistorySummarizer
from .models import (
    HistoryEntry, RelevanceScore, RetrievalResult, SourcesFound, StreamEnd,
    StreamEvent, TextDelta, ToolCall, ToolCallDetected,
)
from .prompts import build_rag_prompt
from .reranker import RerankerClient
from .store import HybridStore
from .tools import tool_schemas, validate_tool_call
from .websearch import DuckDuckGoSearch

ChatModelFactory = Callable[[Optional[str]], ChatModel]


class CancellationToken:
    """Cooperative cancel flag, safe to set from any thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise GenerationAborted("Generation aborted")


def _as_history(history: Sequence) -> list[HistoryEntry]:
    entries = []
    for item in history:
        if isinstance(item, HistoryEntry):
            entries.append(item)
        else:
            entries.append(HistoryEntry(role=item["role"], content=item["content"]))
    return entries


class Orchestrator:
    def __init__(
        self,
        config: Config,
        store: HybridStore,
        cache: EmbeddingCache,
        reranker: Optional[RerankerClient] = None,
        chat_model_factory: Optional[ChatModelFactory] = None,
        web_search: Optional[DuckDuckGoSearch] = None,
        health: Optional[HealthTracker] = None,
    ):
        self.config = config
        self._store = store
        self._cache = cache
        self._reranker = reranker
        self._chat_model_factory = chat_model_factory or (lambda provider: get_chat_model(config, provider))
        self._web_search = web_search or DuckDuckGoSearch(
            max_results=config.web_search_max_results, timeout=config.web_search_timeout,
        )
        self._health = health or HealthTracker()
        self._summarizer = HistorySummarizer()
        self._current: Optional[CancellationToken] = None
        self._current_lock = threading.Lock()

    # ── Cancellation ─────────────────────────────────────

    def _begin(self, token: CancellationToken):
        with self._current_lock:
            previous, self._current = self._current, token
        if previous is not None and previous is not token:
            previous.cancel()

    def _finish(self, token: CancellationToken):
        with self._current_lock:
            if self._current is token:
                self._current = None

    def stop_generation(self) -> bool:
        """Cancel the in-flight question. False if nothing was running."""
        with self._current_lock:
            token = self._current
        if token is None or token.cancelled:
            return False
        token.cancel()
        print("[Orchestrator] Generation stopped")
        return True

    def reset_summary(self):
        self._summarizer.reset()

    # ── Retrieval ────────────────────────────────────────

    async def retrieve(
        self,
        question: str,
        k: Optional[int] = None,
        rerank: Optional[bool] = None,
        apply_threshold: bool = True,
    ) -> list[RetrievalResult]:
        """Top-k chunks for *question* (steps 1-5)."""
        k = k or self.config.retrieval_k
        if rerank is None:
            rerank = self.config.rerank_enabled
        use_rerank = rerank and self._reranker is not None
        fetch_k = k * max(1, self.config.rerank_fetch_multiplier) if use_rerank else k

        vector = await self._cache.get_or_compute(question)
        candidates = await asyncio.to_thread(self._store.similarity_search, vector, fetch_k)
        fused = False
        if self.config.hybrid_search:
            keyword_results = await asyncio.to_thread(self._store.keyword_search, question, fetch_k)
            weight = self.config.keyword_weight
            candidates = reciprocal_rank_fusion(
                [candidates, keyword_results], [1 - weight, weight], c=self.config.rrf_c,
            )
            fused = True

        if use_rerank:
            return await self._rerank(question, candidates, k)
        if apply_threshold and not fused:
            threshold = self.config.similarity_threshold
            candidates = [r for r in candidates if r.score.value < threshold]
        return candidates[:k]

    async def _rerank(self, question: str, candidates: list[RetrievalResult], k: int) -> list[RetrievalResult]:
        if not candidates:
            return []
        try:
            scores = await self._reranker.rerank(question, [r.chunk.content for r in candidates])
        except RerankError as e:
            print(f"Warning: rerank failed, keeping retrieval order: {e}")
            self._health.record_rerank_fallback(str(e))
            return candidates[:k]
        ranked = sorted(zip(candidates, scores), key=lambda pair: pair[1], reverse=True)
        return [RetrievalResult(r.chunk, RelevanceScore(score)) for r, score in ranked[:k]]

    # ── Answering ────────────────────────────────────────

    def ask(
        self,
        question: str,
        history: Optional[Sequence] = None,
        provider: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        record_history: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        """Start answering *question*; cancels whatever was running before.

        Returns an async iterator of SourcesFound, TextDelta,
        ToolCallDetected and finally StreamEnd.
        """
        token = token or CancellationToken()
        self._begin(token)
        return self._run(question, history, provider, token, record_history)

    async def _run(self, question, history, provider, token, record_history) -> AsyncIterator[StreamEvent]:
        try:
            async for event in self._answer(question, history, provider, token, record_history):
                yield event
        except GenerationAborted:
            self._health.record_question("aborted")
            raise
        except LibrisError as e:
            self._health.record_question("failed", str(e))
            raise
        finally:
            self._finish(token)

    async def _answer(self, question, history, provider, token, record_history) -> AsyncIterator[StreamEvent]:
        token.raise_if_cancelled()
        model = self._chat_model_factory(provider)

        if self.config.crag_enabled:
            crag = CorrectiveRAG(
                lambda q: self.retrieve(q, rerank=False, apply_threshold=False),
                model, self._web_search, token=token, health=self._health,
            )
            results = await crag.prepare(question)
            prompt = build_generate_prompt(question, results)
        else:
            results = await self.retrieve(question)
            prompt = await self._build_prompt(question, results, history, model)

        token.raise_if_cancelled()
        yield SourcesFound(results)

        tools = tool_schemas() if self.config.tools_enabled else None
        accumulator = ToolCallAccumulator()
        parts: list[str] = []
        stream = model.stream([{"role": "user", "content": prompt}], tools=tools)
        try:
            async for delta in stream:
                token.raise_if_cancelled()
                for fragment in delta.tool_fragments:
                    accumulator.add(fragment)
                if delta.text:
                    parts.append(delta.text)
                    yield TextDelta(delta.text)
        finally:
            await stream.aclose()

        tool_calls: list[ToolCall] = [validate_tool_call(c) for c in accumulator.finalize()]
        for call in tool_calls:
            token.raise_if_cancelled()
            yield ToolCallDetected(call)

        answer = "".join(parts)
        token.raise_if_cancelled()
        if record_history:
            await asyncio.to_thread(self._store.add_exchange, question, answer)
        self._health.record_question("answered" if results else "no_content")
        yield StreamEnd(answer=answer, sources=results, tool_calls=tool_calls)

    async def _build_prompt(self, question: str, results: list[RetrievalResult],
                            history: Optional[Sequence], model: ChatModel) -> str:
        if history is None:
            entries = await asyncio.to_thread(self._store.get_history)
        else:
            entries = _as_history(history)
        limit = max(0, self.config.history_limit)
        window = entries[-limit:] if limit else []
        older = entries[:-limit] if limit else entries

        summary = ""
        if self.config.history_summary_enabled and older:
            summary = await self._summarizer.summarize(older, model)
        return build_rag_prompt(question, [r.chunk for r in results], window, summary)

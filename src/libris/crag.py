# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Corrective RAG: retrieve -> grade each document -> web search when
nothing relevant survived -> generate.

    retrieve ─> grade_documents ─┬─> generate ─> END
                                 └─> web_search ─> generate

Grading fails open: a grading error keeps the document. Web search
failure is not fatal; generation runs on whatever is left.
"""
import json
import re
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypedDict

from langgraph.graph import END, StateGraph

from .errors import WebSearchError
from .llm import ChatModel
from .models import Chunk, RetrievalResult
from .prompts import CRAG_GENERATE_PROMPT, CRAG_GRADE_PROMPT, format_documents
from .websearch import DuckDuckGoSearch

if TYPE_CHECKING:
    from .health import HealthTracker
    from .orchestrator import CancellationToken

WEB_SEARCH_SOURCE = "duckduckgo-search"

Retriever = Callable[[str], Awaitable[list[RetrievalResult]]]


class CRAGState(TypedDict):
    question: str
    documents: list[RetrievalResult]
    generation: str
    web_search_needed: bool


def grade_is_relevant(answer: str) -> bool:
    """Honour a JSON {"score": ...} answer, else look for 'yes'."""
    match = re.search(r"\{.*\}", answer, re.S)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and "score" in data:
            return "yes" in str(data["score"]).lower()
    return "yes" in answer.lower()


def build_generate_prompt(question: str, documents: list[RetrievalResult]) -> str:
    return CRAG_GENERATE_PROMPT.format(
        context=format_documents([d.chunk for d in documents]),
        question=question,
    )


class CorrectiveRAG:
    def __init__(
        self,
        retrieve: Retriever,
        model: ChatModel,
        web_search: Optional[DuckDuckGoSearch] = None,
        token: Optional["CancellationToken"] = None,
        health: Optional["HealthTracker"] = None,
    ):
        self._retrieve = retrieve
        self._model = model
        self._web_search = web_search or DuckDuckGoSearch()
        self._token = token
        self._health = health

    def _check(self):
        if self._token is not None:
            self._token.raise_if_cancelled()

    # ── Nodes ────────────────────────────────────────────

    async def retrieve(self, state: CRAGState) -> dict:
        print("[CRAG] ---RETRIEVE---")
        self._check()
        return {"documents": await self._retrieve(state["question"])}

    async def grade_documents(self, state: CRAGState) -> dict:
        print("[CRAG] ---GRADE DOCUMENTS---")
        kept = []
        for doc in state["documents"]:
            self._check()
            prompt = CRAG_GRADE_PROMPT.format(context=doc.chunk.content, question=state["question"])
            try:
                relevant = grade_is_relevant(await self._model.complete(prompt))
            except Exception as e:
                print(f"Warning: grading failed, keeping document from {doc.chunk.source}: {e}")
                relevant = True
            if relevant:
                kept.append(doc)
        print(f"[CRAG] {len(kept)}/{len(state['documents'])} documents relevant")
        return {"documents": kept, "web_search_needed": not kept}

    async def web_search(self, state: CRAGState) -> dict:
        print("[CRAG] ---WEB SEARCH---")
        self._check()
        try:
            text = await self._web_search.run(state["question"])
        except WebSearchError as e:
            print(f"Warning: web search failed: {e}")
            if self._health:
                self._health.record_web_search(False, str(e))
            return {"documents": state["documents"]}
        if self._health:
            self._health.record_web_search(True)
        if not text:
            return {"documents": state["documents"]}
        web_doc = RetrievalResult(Chunk(
            content=f"(Web Search Result): {text}",
            source=WEB_SEARCH_SOURCE,
            filename=WEB_SEARCH_SOURCE,
        ))
        return {"documents": [web_doc] + list(state["documents"])}

    async def generate(self, state: CRAGState) -> dict:
        print("[CRAG] ---GENERATE---")
        self._check()
        prompt = build_generate_prompt(state["question"], state["documents"])
        return {"generation": await self._model.complete(prompt)}

    @staticmethod
    def route_after_grading(state: CRAGState) -> str:
        return "web_search" if state["web_search_needed"] else "generate"

    # ── Graph ────────────────────────────────────────────

    def build_graph(self, include_generate: bool = True):
        graph = StateGraph(CRAGState)
        graph.add_node("retrieve", self.retrieve)
        graph.add_node("grade_documents", self.grade_documents)
        graph.add_node("web_search", self.web_search)

        after = "generate" if include_generate else END
        if include_generate:
            graph.add_node("generate", self.generate)
            graph.add_edge("generate", END)

        graph.set_entry_point("retrieve")
        graph.add_edge("retrieve", "grade_documents")
        graph.add_conditional_edges(
            "grade_documents",
            self.route_after_grading,
            {"web_search": "web_search", "generate": after},
        )
        graph.add_edge("web_search", after)
        return graph.compile()

    @staticmethod
    def _initial_state(question: str) -> CRAGState:
        return {"question": question, "documents": [], "generation": "", "web_search_needed": False}

    async def invoke(self, question: str) -> CRAGState:
        """Run the full graph, generation included."""
        return await self.build_graph().ainvoke(self._initial_state(question))

    async def prepare(self, question: str) -> list[RetrievalResult]:
        """Run retrieval, grading and web search; return the documents the
        answer should be generated from."""
        state = await self.build_graph(include_generate=False).ainvoke(self._initial_state(question))
        return state["documents"]

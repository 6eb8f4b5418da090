# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Core data types shared by the store, retrieval pipeline and surfaces.

Scores are tagged: a vector distance, a keyword rank score, a fused rank
score and a reranker relevance score are different types. Ordering two
scores of different kinds raises TypeError instead of silently comparing
numbers that mean different things.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Literal, Optional, Union


@dataclass(frozen=True)
class Chunk:
    content: str
    source: str
    filename: str = ""
    chunk_index: int = 0
    total_chunks: int = 1
    id: Optional[int] = None
    embedding: Optional[tuple[float, ...]] = field(
        default=None, repr=False, compare=False,
    )

    @property
    def key(self) -> tuple[str, str]:
        """Identity used to deduplicate across result lists."""
        return (self.source, self.content)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "source": self.source,
            "filename": self.filename,
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
        }


# ── Scores ───────────────────────────────────────────


@dataclass(frozen=True, order=True)
class Distance:
    """Vector distance. Smaller is more similar."""
    value: float
    kind: ClassVar[str] = "distance"
    higher_is_better: ClassVar[bool] = False


@dataclass(frozen=True, order=True)
class KeywordScore:
    """Negated FTS5 bm25() value. Larger is more relevant."""
    value: float
    kind: ClassVar[str] = "keyword"
    higher_is_better: ClassVar[bool] = True


@dataclass(frozen=True, order=True)
class FusedScore:
    """Reciprocal rank fusion output. Ordinal only."""
    value: float
    kind: ClassVar[str] = "fused"
    higher_is_better: ClassVar[bool] = True


@dataclass(frozen=True, order=True)
class RelevanceScore:
    """Cross-encoder output. Not comparable across queries."""
    value: float
    kind: ClassVar[str] = "relevance"
    higher_is_better: ClassVar[bool] = True


Score = Union[Distance, KeywordScore, FusedScore, RelevanceScore]


@dataclass(frozen=True)
class RetrievalResult:
    chunk: Chunk
    score: Optional[Score] = None

    def to_source_dict(self, snippet_chars: int = 0) -> dict:
        content = self.chunk.content
        if snippet_chars and len(content) > snippet_chars:
            content = content[:snippet_chars] + "..."
        return {
            "source": self.chunk.source,
            "content": content,
            "score": self.score.value if self.score is not None else None,
            "score_kind": self.score.kind if self.score is not None else None,
        }


# ── History / tool calls ─────────────────────────────

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class HistoryEntry:
    role: Role
    content: str
    timestamp: int = field(
        default_factory=lambda: int(datetime.now(timezone.utc).timestamp())
    )

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: dict

    def to_dict(self) -> dict:
        return {"name": self.name, "args": self.args}


# ── Stream events ────────────────────────────────────


@dataclass(frozen=True)
class SourcesFound:
    sources: list[RetrievalResult]
    type: ClassVar[str] = "sources"

    def to_dict(self) -> dict:
        return {"type": self.type, "sources": [s.to_source_dict() for s in self.sources]}


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: ClassVar[str] = "text"

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolCallDetected:
    tool_call: ToolCall
    type: ClassVar[str] = "tool_call"

    def to_dict(self) -> dict:
        return {"type": self.type, "tool_call": self.tool_call.to_dict()}


@dataclass(frozen=True)
class StreamEnd:
    answer: str
    sources: list[RetrievalResult]
    tool_calls: list[ToolCall]
    type: ClassVar[str] = "end"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "answer": self.answer,
            "sources": [s.to_source_dict() for s in self.sources],
            "tool_calls": [c.to_dict() for c in self.tool_calls],
        }


StreamEvent = Union[SourcesFound, TextDelta, ToolCallDetected, StreamEnd]

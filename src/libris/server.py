# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
MCP Server factory – creates a FastMCP instance with tools
that share the engine from the main process.

Tools:
  - search_docs: Hybrid search over ingested chunks
  - ask_question: Grounded answer (retrieval + generation)
  - list_sources: Ingested sources
  - delete_source: Remove a source from the index
  - ingest_text: Chunk + index raw text
  - get_index_stats: Store / reranker / health statistics
  - clear_history: Forget the conversation
"""
import asyncio

from mcp.server.fastmcp import FastMCP

from .engine import RagEngine
from .errors import GenerationAborted, LibrisError
from .models import StreamEnd


def create_mcp_server(engine: RagEngine) -> FastMCP:
    """Factory: returns a configured FastMCP server that shares state with web.py."""

    mcp = FastMCP(
        "libris",
        instructions=(
            "Local knowledge base with grounded answers.\n\n"
            "WORKFLOW for the agent:\n"
            "1. search_docs() to see what the knowledge base knows\n"
            "2. ask_question() for an answer grounded in those chunks\n"
            "3. ingest_text() to add knowledge, delete_source() to remove it"
        ),
    )

    @mcp.tool()
    async def search_docs(query: str, top_k: int = 4) -> str:
        """Search the knowledge base. Returns the most relevant chunks.

        Args:
            query: What you want to know (natural language, be specific)
            top_k: Number of results (default: 4)

        Returns:
            Relevant chunks with source reference and score
        """
        try:
            results = await engine.search(query, k=top_k)
        except LibrisError as e:
            return f"Error: search failed: {e}"

        if not results:
            return (
                "No relevant documents found. "
                "Try a different or more specific query."
            )

        output = []
        for r in results:
            score = f"{r.score.kind}: {r.score.value:.4f}" if r.score is not None else "unscored"
            output.append(f"**{r.chunk.source}** ({score})\n\n{r.chunk.content}\n\n---")
        return "\n".join(output)

    @mcp.tool()
    async def ask_question(question: str, provider: str = "") -> str:
        """Answer a question from the knowledge base (retrieval + LLM).

        Args:
            question: The question
            provider: LLM provider ("deepseek" or "gemini", default from config)

        Returns:
            The answer followed by its sources and any tool calls
        """
        end = None
        try:
            async for event in engine.ask(question, provider=provider or None):
                if isinstance(event, StreamEnd):
                    end = event
        except GenerationAborted:
            return "Generation aborted by user."
        except LibrisError as e:
            return f"Error: pipeline error: {e}"
        if end is None:
            return "Error: pipeline ended without an answer."

        output = [end.answer.strip() or "(empty answer)"]
        if end.sources:
            output.append("\n**Sources:**")
            output.extend(f"- {s.chunk.source}" for s in end.sources)
        else:
            output.append("\n_No relevant content found in the knowledge base._")
        if end.tool_calls:
            output.append("\n**Tool calls:**")
            output.extend(f"- {c.name}: {c.args}" for c in end.tool_calls)
        return "\n".join(output)

    @mcp.tool()
    def list_sources() -> str:
        """List all ingested sources."""
        sources = engine.list_sources()
        if not sources:
            return "Knowledge base is empty."
        return f"{len(sources)} sources:\n" + "\n".join(f"- {s}" for s in sources)

    @mcp.tool()
    async def delete_source(source: str) -> str:
        """Remove every chunk of a source from the index.

        Args:
            source: Source path exactly as listed by list_sources()
        """
        try:
            remaining = await asyncio.to_thread(engine.delete_source, source)
        except LibrisError as e:
            return f"Error: delete failed: {e}"
        return f"Deleted '{source}'. {len(remaining)} sources remaining."

    @mcp.tool()
    async def ingest_text(source: str, text: str) -> str:
        """Chunk and index text under a source name. Replaces earlier
        content of the same source.

        Args:
            source: Source name/path to file the text under
            text: Plain text or markdown content
        """
        result = await engine.ingest_text(source, text)
        if not result["success"]:
            reasons = "; ".join(f"{f['file']}: {f['reason']}" for f in result["failed"])
            return f"Ingest failed: {reasons}"
        return f"Ingested {result['ingested'].get(source, 0)} chunks from '{source}'."

    @mcp.tool()
    def get_index_stats() -> str:
        """Show statistics about the knowledge base."""
        status = engine.status()
        store = status["store"]
        reranker = status["reranker"]
        health = status["health"]
        outcomes = "\n".join(
            f"  - {k}: {v}" for k, v in health["questions_by_outcome"].items()
        )
        return (
            f"**Index Statistics**\n\n"
            f"- **Chunks total:** {store['total_chunks']}\n"
            f"- **Sources:** {store['sources']}\n"
            f"- **Embedding:** {store['embedding_model']} ({store['dimension']}d)\n"
            f"- **Index consistent:** {status['consistent']}\n"
            f"- **Reranker:** {reranker['model']} "
            f"(alive: {reranker['alive']}, terminal: {reranker['terminal']})\n"
            f"- **Rerank fallbacks:** {health['rerank_fallbacks']}\n\n"
            f"**Questions ({health['questions_total']}):**\n{outcomes}"
        )

    @mcp.tool()
    def clear_history() -> str:
        """Forget the stored conversation history."""
        engine.clear_history()
        return "Conversation history cleared."

    return mcp

# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH. All rights reserved.
# Non-commercial use only. Commercial licensing: info@4rce.com

"""
Web API (FastAPI) – ingestion, sources, streamed answers, history, vector map.
Runs in a background thread alongside the MCP server. Ingest, delete and
the vector map do blocking store work and run in worker threads.

All state (engine, health) is injected via create_web_app().

/api/ask streams newline-delimited JSON events:
  {"type": "sources", ...} {"type": "text", ...} {"type": "tool_call", ...}
  then exactly one of
  {"type": "end", "outcome": "answered" | "no_content", ...}
  {"type": "aborted", "message": "aborted by user"}
  {"type": "error", "message": "pipeline error: ..."}
"""
import asyncio
import json
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .engine import RagEngine
from .errors import GenerationAborted, LibrisError
from .models import Chunk, StreamEnd


class ChunkIn(BaseModel):
    content: str
    source: str
    filename: str = ""
    chunk_index: int = 0
    total_chunks: int = 1


class IngestRequest(BaseModel):
    chunks: list[ChunkIn] = []
    source: Optional[str] = None
    text: Optional[str] = None
    replace: bool = True


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class AskRequest(BaseModel):
    question: str
    history: Optional[list[HistoryMessage]] = None
    provider: Optional[Literal["deepseek", "gemini"]] = None
    record_history: bool = True


def _line(payload: dict) -> str:
    return json.dumps(payload, ensure_ascii=False) + "\n"


def create_web_app(engine: RagEngine) -> FastAPI:
    """Factory: returns a FastAPI app that shares state with the MCP server."""

    app = FastAPI(
        title="Libris",
        description="Local-first knowledge base with grounded answers",
    )
    health = engine.health

    # ── Health ───────────────────────────────────────

    @app.get("/health")
    async def health_check():
        from . import __version__
        status = health.status
        return {
            "status": "ok" if health.is_healthy else "degraded",
            "version": __version__,
            "chunks": engine.store.count_chunks(),
            "last_ingest_at": status.get("last_ingest_at"),
            "last_ingest_ok": status.get("last_ingest_ok"),
            "questions_total": status.get("questions_total"),
        }

    @app.get("/api/health")
    async def health_detail():
        return engine.status()

    @app.get("/api/config")
    async def get_config():
        return {"config": engine.config.to_safe_dict()}

    # ── Sources ──────────────────────────────────────

    @app.get("/api/sources")
    async def list_sources():
        return {"sources": engine.list_sources()}

    @app.delete("/api/sources")
    async def delete_source(path: str):
        try:
            remaining = await asyncio.to_thread(engine.delete_source, path)
        except LibrisError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "success", "sources": remaining}

    @app.post("/api/ingest")
    async def ingest(req: IngestRequest):
        if req.text is not None:
            if not req.source:
                raise HTTPException(status_code=400, detail="'source' is required with 'text'")
            return await engine.ingest_text(req.source, req.text, replace=req.replace)
        if not req.chunks:
            raise HTTPException(status_code=400, detail="Nothing to ingest")
        chunks = [Chunk(**c.model_dump()) for c in req.chunks]
        return await asyncio.to_thread(engine.ingest, chunks, req.replace)

    @app.get("/api/vectors")
    async def vectors(query: Optional[str] = None):
        try:
            return await asyncio.to_thread(engine.vector_positions, query)
        except LibrisError as e:
            raise HTTPException(status_code=500, detail=str(e))

    # ── Questions ────────────────────────────────────

    @app.post("/api/ask")
    async def ask(req: AskRequest):
        history = [h.model_dump() for h in req.history] if req.history is not None else None
        events = engine.ask(
            req.question, history=history, provider=req.provider,
            record_history=req.record_history,
        )

        async def body():
            try:
                async for event in events:
                    payload = event.to_dict()
                    if isinstance(event, StreamEnd):
                        payload["outcome"] = "answered" if event.sources else "no_content"
                        if not event.sources:
                            payload["message"] = "no relevant content found"
                    yield _line(payload)
            except GenerationAborted:
                yield _line({"type": "aborted", "message": "aborted by user"})
            except LibrisError as e:
                print(f"Warning: question failed: {e}")
                yield _line({"type": "error", "message": f"pipeline error: {e}"})

        return StreamingResponse(body(), media_type="application/x-ndjson")

    @app.post("/api/stop")
    async def stop():
        return {"stopped": engine.stop_generation()}

    # ── History ──────────────────────────────────────

    @app.get("/api/history")
    async def get_history(limit: Optional[int] = None):
        return {"history": [e.to_dict() for e in engine.get_history(limit)]}

    @app.post("/api/history")
    async def add_history(msg: HistoryMessage):
        try:
            entry = engine.add_history_entry(msg.role, msg.content)
        except LibrisError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"status": "success", "entry": entry.to_dict()}

    @app.delete("/api/history")
    async def clear_history():
        engine.clear_history()
        return {"status": "success", "message": "History cleared"}

    return app

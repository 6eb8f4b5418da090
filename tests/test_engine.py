"""Tests for RagEngine: ingestion, sources, search, history and status."""
import asyncio

import pytest

from libris.engine import RagEngine
from libris.errors import GenerationError, StorageInitError
from libris.models import Chunk, StreamEnd

from conftest import BERLIN, PARIS, TOPIC_SHIFT, FakeEmbeddingFunction, collect, qa_model_reply


class TestIngest:
    def test_grouped_per_source(self, engine, capitals):
        extra = Chunk(content="Paris hosts the Louvre.", source="geo/france.md", chunk_index=1)
        result = engine.ingest(capitals + [extra])
        assert result["success"] is True
        assert result["ingested"] == {"geo/france.md": 2, "geo/germany.md": 1}
        assert result["sources"] == ["geo/france.md", "geo/germany.md"]
        assert result["failed"] == []
        assert engine.store.count_chunks() == 3

    def test_reingest_replaces_source(self, engine, capitals):
        engine.ingest(capitals)
        engine.ingest([Chunk(content="Paris is in Europe.", source="geo/france.md")])
        assert engine.store.count_chunks() == 2
        assert engine.store.keyword_search("France", 4) == []

    def test_append_without_replace(self, engine, capitals):
        engine.ingest(capitals)
        engine.ingest([Chunk(content="Paris is in Europe.", source="geo/france.md")], replace=False)
        assert engine.store.count_chunks() == 3

    def test_failing_source_does_not_block_others(self, engine, capitals, health):
        bad = Chunk(content="broken vector", source="bad.md", embedding=(1.0, 2.0))
        result = engine.ingest(capitals + [bad])
        assert result["success"] is False
        assert result["ingested"] == {"geo/france.md": 1, "geo/germany.md": 1}
        assert [f["file"] for f in result["failed"]] == ["bad.md"]
        assert "bad.md" not in result["sources"]
        assert health.status["last_ingest_ok"] is False
        assert engine.store.is_consistent()

    def test_ingest_text(self, engine):
        result = asyncio.run(engine.ingest_text("notes/capitals.md", PARIS + "\n" + BERLIN))
        assert result["success"] is True
        assert result["ingested"] == {"notes/capitals.md": 1}
        hits = engine.store.keyword_search("Germany", 4)
        assert hits[0].chunk.filename == "capitals.md"

    def test_ingest_blank_text(self, engine):
        result = asyncio.run(engine.ingest_text("empty.md", "   "))
        assert result["success"] is False
        assert result["failed"][0]["file"] == "empty.md"
        assert engine.list_sources() == []

    def test_ingest_text_semantic(self, engine):
        engine.config = engine.config.model_copy(
            update={"chunk_strategy": "semantic", "semantic_breakpoint_threshold": 50},
        )
        result = asyncio.run(engine.ingest_text("notes/mixed.md", TOPIC_SHIFT))
        assert result["ingested"] == {"notes/mixed.md": 2}

    def test_ingest_text_llm_enhanced(self, engine, chat_model):
        chat_model.complete_answer = qa_model_reply
        engine.config = engine.config.model_copy(update={"chunk_strategy": "llm_enhanced"})
        result = asyncio.run(engine.ingest_text("notes/faq.md", "To deploy, run make deploy."))
        assert result["ingested"] == {"notes/faq.md": 3}
        hits = engine.store.keyword_search("ship", 4)
        assert hits[0].chunk.content == "How to ship it\n\nRun make deploy."

    def test_ingest_text_llm_unavailable(self, engine, health):
        def factory(provider):
            raise GenerationError("No API key configured for provider 'deepseek'")

        engine._chat_model_factory = factory
        engine.config = engine.config.model_copy(update={"chunk_strategy": "llm_enhanced"})
        result = asyncio.run(engine.ingest_text("notes/faq.md", "To deploy, run make deploy."))
        assert result["success"] is False
        assert "No API key" in result["failed"][0]["reason"]
        assert health.status["last_ingest_ok"] is False
        assert engine.list_sources() == []


class TestSources:
    def test_delete_returns_remaining(self, engine, capitals):
        engine.ingest(capitals)
        assert engine.delete_source("geo/france.md") == ["geo/germany.md"]
        assert engine.delete_source("geo/france.md") == ["geo/germany.md"]
        assert engine.store.is_consistent()


class TestVectorPositions:
    def test_empty_store(self, engine):
        assert engine.vector_positions("anything") == {"points": []}

    def test_chunks_and_query(self, engine, capitals):
        engine.ingest(capitals)
        points = engine.vector_positions("capital of France")["points"]
        assert [p["is_query"] for p in points] == [False, False, True]
        assert {p["text"] for p in points[:2]} == {PARIS, BERLIN}
        assert points[-1]["text"] == "Query: capital of France"
        assert points[-1]["id"] == -1
        assert all(isinstance(p["x"], float) and isinstance(p["y"], float) for p in points)

    def test_without_query(self, engine, capitals):
        engine.ingest(capitals)
        points = engine.vector_positions()["points"]
        assert len(points) == 2
        assert sorted(p["id"] for p in points) == sorted(
            c.id for c, _ in engine.store.all_vectors()
        )


class TestSearch:
    def test_records_hit_and_miss(self, engine, capitals, health):
        assert asyncio.run(engine.search("capital of France")) == []
        engine.ingest(capitals)
        results = asyncio.run(engine.search("capital of France", k=1))
        assert [r.chunk.content for r in results] == [PARIS]
        s = health.status
        assert s["searches_total"] == 2
        assert s["searches_hits"] == 1


class TestAsk:
    def test_stream_and_history(self, engine, capitals):
        engine.ingest(capitals)
        events = collect(engine.ask("What is the capital of France?"))
        assert isinstance(events[-1], StreamEnd)
        assert [h.role for h in engine.get_history()] == ["user", "assistant"]
        engine.clear_history()
        assert engine.get_history() == []

    def test_stop_without_question(self, engine):
        assert engine.stop_generation() is False


class TestHistory:
    def test_add_and_limit(self, engine):
        engine.add_history_entry("user", "one")
        engine.add_history_entry("assistant", "two")
        engine.add_history_entry("user", "three")
        assert [h.content for h in engine.get_history(2)] == ["two", "three"]

    def test_invalid_role(self, engine):
        with pytest.raises(ValueError):
            engine.add_history_entry("tool", "nope")


class TestStatus:
    def test_shape(self, engine, capitals):
        engine.ingest(capitals)
        status = engine.status()
        assert status["store"]["total_chunks"] == 2
        assert status["store"]["dimension"] == 64
        assert status["consistent"] is True
        assert status["reranker"]["spawn_count"] == 0
        assert status["embedding_cache"]["capacity"] == 256
        assert status["health"]["store_ok"] is True


class TestOpen:
    def test_dimension_mismatch_recorded(self, engine, config, capitals, health):
        engine.ingest(capitals)
        engine.close()
        with pytest.raises(StorageInitError):
            RagEngine(config, embedding_fn=FakeEmbeddingFunction(dim=16), health=health)
        assert health.is_healthy is False
        assert "dimension mismatch" in health.status["store_error"]

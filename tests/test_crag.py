"""Tests for the corrective RAG graph."""
import asyncio

import pytest

from libris.crag import WEB_SEARCH_SOURCE, CorrectiveRAG, grade_is_relevant
from libris.errors import GenerationAborted, GenerationError, WebSearchError
from libris.models import Chunk, Distance, RetrievalResult
from libris.orchestrator import CancellationToken

from conftest import BERLIN, PARIS, FakeChatModel, FakeWebSearch


def _docs():
    return [
        RetrievalResult(Chunk(content=PARIS, source="geo/france.md"), Distance(0.5)),
        RetrievalResult(Chunk(content=BERLIN, source="geo/germany.md"), Distance(0.8)),
    ]


def _retriever(docs):
    async def retrieve(question):
        return list(docs)
    return retrieve


def _grade_by_keyword(keyword):
    """Grade 'yes' when the document in the prompt mentions *keyword*."""
    def answer(prompt):
        if "Retrieved document" not in prompt:
            return "generated answer"
        document = prompt.split("Retrieved document:")[1].split("User question:")[0]
        score = "yes" if keyword in document else "no"
        return '{"score": "%s", "reason": "test"}' % score
    return answer


class TestGradeParsing:
    def test_json_score(self):
        assert grade_is_relevant('{"score": "yes", "reason": "mentions Paris"}')
        assert not grade_is_relevant('{"score": "no", "reason": "yes it mentions something else"}')

    def test_json_inside_prose(self):
        assert grade_is_relevant('Here you go:\n```json\n{"score": "Yes"}\n```')

    def test_plain_text_fallback(self):
        assert grade_is_relevant("Yes, it is relevant.")
        assert not grade_is_relevant("No.")

    def test_broken_json_falls_back_to_substring(self):
        assert grade_is_relevant('{"score": yes')


class TestPrepare:
    def test_irrelevant_documents_dropped(self):
        model = FakeChatModel(complete_answer=_grade_by_keyword("Paris"))
        web = FakeWebSearch()
        crag = CorrectiveRAG(_retriever(_docs()), model, web)
        docs = asyncio.run(crag.prepare("What is the capital of France?"))
        assert [d.chunk.content for d in docs] == [PARIS]
        assert web.queries == []

    def test_grading_error_keeps_document(self):
        def answer(prompt):
            raise GenerationError("grader down")

        crag = CorrectiveRAG(_retriever(_docs()), FakeChatModel(complete_answer=answer), FakeWebSearch())
        docs = asyncio.run(crag.prepare("capital?"))
        assert [d.chunk.content for d in docs] == [PARIS, BERLIN]

    def test_no_survivors_triggers_web_search(self, health):
        web = FakeWebSearch()
        crag = CorrectiveRAG(
            _retriever(_docs()), FakeChatModel(complete_answer='{"score": "no"}'), web, health=health,
        )
        docs = asyncio.run(crag.prepare("When did Paris become the capital?"))
        assert web.queries == ["When did Paris become the capital?"]
        assert len(docs) == 1
        assert docs[0].chunk.source == WEB_SEARCH_SOURCE
        assert docs[0].chunk.content.startswith("(Web Search Result): ")
        assert "987" in docs[0].chunk.content
        assert docs[0].score is None
        assert health.status["web_searches_total"] == 1

    def test_empty_retrieval_goes_to_web(self):
        web = FakeWebSearch()
        crag = CorrectiveRAG(_retriever([]), FakeChatModel(), web)
        docs = asyncio.run(crag.prepare("anything"))
        assert [d.chunk.source for d in docs] == [WEB_SEARCH_SOURCE]

    def test_web_failure_is_not_fatal(self, health):
        web = FakeWebSearch(error=WebSearchError("blocked"))
        crag = CorrectiveRAG(
            _retriever(_docs()), FakeChatModel(complete_answer="no"), web, health=health,
        )
        docs = asyncio.run(crag.prepare("capital?"))
        assert docs == []
        assert health.status["web_searches_failed"] == 1
        assert health.status["last_web_search_error"] == "blocked"

    def test_cancelled_token_aborts(self):
        token = CancellationToken()
        token.cancel()
        crag = CorrectiveRAG(_retriever(_docs()), FakeChatModel(), FakeWebSearch(), token=token)
        with pytest.raises(GenerationAborted):
            asyncio.run(crag.prepare("capital?"))


class TestInvoke:
    def test_full_graph_generates(self):
        model = FakeChatModel(complete_answer=_grade_by_keyword("Paris"))
        crag = CorrectiveRAG(_retriever(_docs()), model, FakeWebSearch())
        state = asyncio.run(crag.invoke("What is the capital of France?"))
        assert state["generation"] == "generated answer"
        assert [d.chunk.content for d in state["documents"]] == [PARIS]
        assert state["web_search_needed"] is False
        generate_prompt = model.complete_prompts[-1]
        assert PARIS in generate_prompt
        assert BERLIN not in generate_prompt

    def test_generation_uses_web_result(self):
        model = FakeChatModel(complete_answer=_grade_by_keyword("nothing matches this"))
        crag = CorrectiveRAG(_retriever(_docs()), model, FakeWebSearch())
        state = asyncio.run(crag.invoke("When did Paris become the capital?"))
        assert state["web_search_needed"] is True
        assert "(Web Search Result)" in model.complete_prompts[-1]

    def test_route(self):
        assert CorrectiveRAG.route_after_grading({"web_search_needed": True}) == "web_search"
        assert CorrectiveRAG.route_after_grading({"web_search_needed": False}) == "generate"

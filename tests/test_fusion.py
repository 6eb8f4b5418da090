"""Tests for reciprocal rank fusion."""
import pytest

from libris.fusion import reciprocal_rank_fusion
from libris.models import Chunk, Distance, FusedScore, KeywordScore, RetrievalResult


def _results(*contents, score_type=Distance, source="doc.md"):
    return [
        RetrievalResult(Chunk(content=c, source=source), score_type(float(i)))
        for i, c in enumerate(contents)
    ]


def _contents(fused):
    return [r.chunk.content for r in fused]


class TestArithmetic:
    def test_contribution_formula(self):
        fused = reciprocal_rank_fusion(
            [_results("A", "B", "C"), _results("B", "C", "A", score_type=KeywordScore)],
            weights=[0.5, 0.5], c=60,
        )
        scores = {r.chunk.content: r.score.value for r in fused}
        assert scores["A"] == pytest.approx(0.5 / 61 + 0.5 / 63)
        assert scores["B"] == pytest.approx(0.5 / 62 + 0.5 / 61)
        assert scores["C"] == pytest.approx(0.5 / 63 + 0.5 / 62)
        assert _contents(fused) == ["B", "A", "C"]
        assert all(isinstance(r.score, FusedScore) for r in fused)

    def test_default_weights_are_equal(self):
        default = reciprocal_rank_fusion([_results("A", "B"), _results("B", "A")])
        explicit = reciprocal_rank_fusion([_results("A", "B"), _results("B", "A")], weights=[0.5, 0.5])
        assert [r.score.value for r in default] == [r.score.value for r in explicit]

    def test_weights_shift_ranking(self):
        fused = reciprocal_rank_fusion(
            [_results("A", "B"), _results("B", "A")], weights=[0.2, 0.8],
        )
        assert _contents(fused) == ["B", "A"]

    def test_custom_c(self):
        fused = reciprocal_rank_fusion([_results("A")], weights=[1.0], c=0)
        assert fused[0].score.value == pytest.approx(1.0)

    def test_weight_count_must_match(self):
        with pytest.raises(ValueError):
            reciprocal_rank_fusion([_results("A"), _results("B")], weights=[1.0])


class TestTies:
    def test_exact_tie_keeps_first_list_order(self):
        fused = reciprocal_rank_fusion([_results("A", "B"), _results("B", "A")])
        assert fused[0].score.value == pytest.approx(fused[1].score.value)
        assert _contents(fused) == ["A", "B"]

    def test_tie_between_lists_earlier_list_wins(self):
        fused = reciprocal_rank_fusion([_results("X"), _results("Y")])
        assert _contents(fused) == ["X", "Y"]


class TestDeduplication:
    def test_same_source_and_content_merged(self):
        fused = reciprocal_rank_fusion([_results("A"), _results("A")])
        assert len(fused) == 1
        assert fused[0].score.value == pytest.approx(0.5 / 61 + 0.5 / 61)

    def test_same_content_different_source_kept_apart(self):
        fused = reciprocal_rank_fusion([
            _results("A", source="one.md"), _results("A", source="two.md"),
        ])
        assert len(fused) == 2

    def test_first_seen_chunk_object_kept(self):
        first = Chunk(content="A", source="doc.md", id=1)
        second = Chunk(content="A", source="doc.md", id=2)
        fused = reciprocal_rank_fusion([
            [RetrievalResult(first, Distance(0.1))],
            [RetrievalResult(second, KeywordScore(3.0))],
        ])
        assert fused[0].chunk.id == 1

    def test_empty_inputs(self):
        assert reciprocal_rank_fusion([]) == []
        assert reciprocal_rank_fusion([[], []]) == []


class TestScoreTypes:
    def test_cross_kind_ordering_raises(self):
        with pytest.raises(TypeError):
            Distance(0.1) < KeywordScore(0.2)

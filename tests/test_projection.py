"""Tests for the 2-D vector map."""
import pytest

from libris.models import Chunk
from libris.projection import pca_2d, vector_positions


class TestPca2d:
    def test_points_on_a_line(self):
        # All variance along (1, 2, 0): second component is empty
        coords = pca_2d([[t, 2 * t, 0.0] for t in range(4)])
        assert coords.shape == (4, 2)
        assert all(abs(y) < 1e-9 for y in coords[:, 1])
        steps = [abs(coords[i + 1, 0] - coords[i, 0]) for i in range(3)]
        assert steps == pytest.approx([5 ** 0.5] * 3)

    def test_centered(self):
        coords = pca_2d([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0], [3.0, -2.0]])
        assert coords.mean(axis=0) == pytest.approx([0.0, 0.0], abs=1e-9)

    def test_single_vector(self):
        coords = pca_2d([[0.5, 0.5, 0.5]])
        assert coords.tolist() == [[0.0, 0.0]]

    def test_one_dimensional_input_padded(self):
        coords = pca_2d([[1.0], [3.0]])
        assert coords.shape == (2, 2)
        assert coords[:, 1].tolist() == [0.0, 0.0]


class TestVectorPositions:
    def _pairs(self):
        return [
            (Chunk(content="a", source="s.md", id=1), [1.0, 0.0, 0.0]),
            (Chunk(content="b", source="s.md", id=2), [0.0, 1.0, 0.0]),
        ]

    def test_empty(self):
        assert vector_positions([], "query", [1.0, 0.0, 0.0]) == {"points": []}

    def test_query_point_last(self):
        points = vector_positions(self._pairs(), "where?", [0.0, 0.0, 1.0])["points"]
        assert [(p["id"], p["text"], p["is_query"]) for p in points] == [
            (1, "a", False), (2, "b", False), (-1, "Query: where?", True),
        ]

    def test_without_query(self):
        points = vector_positions(self._pairs())["points"]
        assert [p["id"] for p in points] == [1, 2]
        # Two points mirror each other around the origin
        assert points[0]["x"] == pytest.approx(-points[1]["x"])

# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
2-D map of the vector space: every stored chunk (and optionally a query)
projected onto the first two principal components.
"""
from typing import Optional, Sequence

import numpy as np

from .models import Chunk


def pca_2d(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Rows of *vectors* projected onto their first two principal
    components. Shape (n, 2); missing components are zero."""
    matrix = np.asarray(vectors, dtype=np.float64)
    centered = matrix - matrix.mean(axis=0)
    _, _, vt = np.linalg.svd(centered, full_matrices=False)
    projected = centered @ vt[:2].T
    if projected.shape[1] < 2:
        projected = np.pad(projected, ((0, 0), (0, 2 - projected.shape[1])))
    return projected


def vector_positions(
    pairs: Sequence[tuple[Chunk, Sequence[float]]],
    query: Optional[str] = None,
    query_vector: Optional[Sequence[float]] = None,
) -> dict:
    if not pairs:
        return {"points": []}

    vectors = [vec for _, vec in pairs]
    if query_vector is not None:
        vectors.append(query_vector)
    coords = pca_2d(vectors)
    print(f"[Projection] {len(vectors)} vectors -> 2D")

    points = [
        {"x": float(x), "y": float(y), "text": chunk.content, "is_query": False, "id": chunk.id}
        for (chunk, _), (x, y) in zip(pairs, coords)
    ]
    if query_vector is not None:
        x, y = coords[-1]
        points.append({"x": float(x), "y": float(y), "text": f"Query: {query}", "is_query": True, "id": -1})
    return {"points": points}

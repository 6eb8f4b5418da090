# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Reciprocal rank fusion.

Only rank positions are used, never the raw scores, so lists with
incomparable score scales (vector distance, BM25) can be merged.
"""
from typing import Optional, Sequence

from .models import Chunk, FusedScore, RetrievalResult

DEFAULT_RRF_C = 60


def reciprocal_rank_fusion(
    result_lists: Sequence[Sequence[RetrievalResult]],
    weights: Optional[Sequence[float]] = None,
    c: int = DEFAULT_RRF_C,
) -> list[RetrievalResult]:
    """Merge ranked lists into one, best first.

    A chunk at 0-indexed rank r of list i contributes weights[i] / (c + r + 1).
    Contributions are summed per (source, content). Ties keep first-seen
    order: the earlier list wins, then the lower rank.
    """
    if not result_lists:
        return []
    if weights is None:
        weights = [1.0 / len(result_lists)] * len(result_lists)
    if len(weights) != len(result_lists):
        raise ValueError(
            f"Got {len(weights)} weights for {len(result_lists)} result lists"
        )

    scores: dict[tuple[str, str], float] = {}
    chunks: dict[tuple[str, str], Chunk] = {}
    for results, weight in zip(result_lists, weights):
        for rank, result in enumerate(results):
            key = result.chunk.key
            if key not in chunks:
                chunks[key] = result.chunk
                scores[key] = 0.0
            scores[key] += weight / (c + rank + 1)

    # dicts keep first-seen order and sorted() is stable
    ordered = sorted(scores, key=lambda key: scores[key], reverse=True)
    return [RetrievalResult(chunks[key], FusedScore(scores[key])) for key in ordered]

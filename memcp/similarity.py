"""
Vector similarity for semantic retrieval.

Provides cosine similarity between two equal-length vectors and a stable
ranking helper used by the store's linear scan.

Embeddings are L2-normalized by the provider, so the cosine reduces to a dot
product; the norms are still computed so that arbitrary vectors score
correctly and zero vectors score 0.0 instead of NaN.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np

T = TypeVar("T")
Vector = Union[np.ndarray, Sequence[float]]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity in [-1, 1].

    Accumulates in float64 with a fixed summation order, so a given pair of
    inputs always yields the same score.

    Raises:
        ValueError: If the vectors are not one-dimensional or differ in length.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.shape != vb.shape:
        raise ValueError(
            f"Vector dimension mismatch: {va.shape} vs {vb.shape}"
        )

    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0

    score = float(np.dot(va, vb)) / denom
    # Clamp rounding overshoot on (anti)parallel vectors
    return max(-1.0, min(1.0, score))


def rank_by_similarity(
    query: Vector,
    candidates: Iterable[Tuple[T, Vector]],
    limit: Optional[int] = None,
) -> List[Tuple[T, float]]:
    """Score ``(item, vector)`` pairs against ``query``, best first.

    Tie-breaking: Python's sorted() is stable, so items with equal scores
    keep the order in which the candidates were supplied.
    """
    scored = [(item, cosine_similarity(query, vec)) for item, vec in candidates]
    scored.sort(key=lambda pair: -pair[1])
    if limit is not None:
        scored = scored[:limit]
    return scored

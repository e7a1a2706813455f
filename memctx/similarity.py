"""
Cosine similarity search over an in-memory candidate set.

The corpus is small (thousands of items), so candidates are fetched from
the store and scored directly; there is no vector index.
"""

import logging
from collections.abc import Iterable, Sequence

import numpy as np

from .types import EmbeddedItem, SimilarityResult

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero norm.

    Raises:
        ValueError: if the dimensions differ
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(
            f"Embeddings must have the same dimensions ({va.shape[0]} != {vb.shape[0]})"
        )
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def find_most_similar(
    query_vector: Sequence[float],
    candidates: Iterable[EmbeddedItem],
    limit: int = 10,
    min_similarity: float = 0.1,
) -> list[SimilarityResult]:
    """
    Rank candidates by cosine similarity to the query vector.

    Negative similarities count as "no relation" and are clamped to 0.
    Results below min_similarity are dropped. Ties are broken by recency
    (most recently updated first), then by id, so output is deterministic.

    Candidates without a vector, with a vector of a different dimension
    than the query, or whose similarity is not finite (NaN/inf components)
    are skipped.

    Args:
        query_vector: Embedding of the query text
        candidates: Items to rank
        limit: Maximum number of results
        min_similarity: Similarity floor in [0, 1]

    Returns:
        At most `limit` results, best first
    """
    if limit <= 0:
        return []

    query = np.asarray(query_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query)

    scored: list[SimilarityResult] = []
    for item in candidates:
        if not item.vector:
            continue
        vector = np.asarray(item.vector, dtype=np.float64)
        if vector.shape != query.shape:
            logger.debug("Skipping %s %s: dimension %d != %d",
                         item.kind, item.id, vector.shape[0], query.shape[0])
            continue
        norm = query_norm * np.linalg.norm(vector)
        sim = float(np.dot(query, vector) / norm) if norm else 0.0
        if not np.isfinite(sim):
            logger.debug("Skipping %s %s: non-finite similarity", item.kind, item.id)
            continue
        sim = min(max(sim, 0.0), 1.0)
        if sim < min_similarity:
            continue
        scored.append(SimilarityResult(item=item, score=sim))

    # Stable sorts, least significant key first
    scored.sort(key=lambda r: r.item.id)
    scored.sort(key=lambda r: r.item.updated_at or "", reverse=True)
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored[:limit]

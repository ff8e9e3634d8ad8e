"""Vector Index implementation.

Cosine similarity over chunk embeddings using a brute-force numpy scan. There
is no ANN structure: cost is O(chunks x dimension) per query, which is fine
for a single knowledge base of a few hundred thousand chunks and is the
scaling ceiling of this component.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from retrieval_services.models import Chunk

# Configure logging
logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is a zero vector."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class VectorIndex:
    """Brute-force cosine scoring over child and window chunks."""

    def search(self, query_vector: Sequence[float], chunks: Sequence[Chunk],
               min_score: float = 0.0, limit: Optional[int] = None) -> List[Tuple[Chunk, float]]:
        """Rank chunks by cosine similarity to the query vector.

        Args:
            query_vector: Embedding of the query
            chunks: Candidate chunks; parents and chunks without embeddings are skipped
            min_score: Similarity floor applied before ranking
            limit: Maximum number of results

        Returns:
            (chunk, similarity) pairs sorted descending, ties by chunk id
        """
        query = np.asarray(query_vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query.size == 0 or query_norm == 0.0:
            return []

        candidates = []
        skipped = 0
        for chunk in chunks:
            if not chunk.is_retrievable or not chunk.has_embedding:
                continue
            if len(chunk.embedding) != query.size:
                skipped += 1
                continue
            candidates.append(chunk)

        if skipped:
            logger.warning(f"Skipped {skipped} chunks whose embedding dimension differs from the query ({query.size})")
        if not candidates:
            return []

        matrix = np.asarray([chunk.embedding for chunk in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        similarities = (matrix @ query) / (norms * query_norm)

        results = [
            (chunk, float(score))
            for chunk, score in zip(candidates, similarities)
            if score >= min_score
        ]
        results.sort(key=lambda item: (-item[1], item[0].id))
        if limit is not None:
            results = results[:limit]
        logger.debug(f"Vector search scanned {len(candidates)} chunks, {len(results)} above {min_score}")
        return results

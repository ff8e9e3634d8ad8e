"""Fusion Engine implementation.

This module merges the lexical and vector result lists with Reciprocal Rank
Fusion. The smoothing constant ``k`` and the per-list weights come from the
fusion profile selected for the classified intent.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from retrieval_services.lexical_index import LexicalMatch
from retrieval_services.models import Chunk, Intent, SearchHit
from retrieval_services.settings import FusionProfile, RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)

KEYWORD_SOURCE = "keyword"
VECTOR_SOURCE = "vector"


def rrf_contribution(rank: int, k: float, weight: float = 1.0) -> float:
    """Contribution of a result at 0-indexed ``rank``: weight / (k + rank + 1)."""
    return weight / (k + rank + 1)


class FusionEngine:
    """Weighted Reciprocal Rank Fusion of keyword and vector results."""

    def __init__(self, settings: Optional[RetrievalSettings] = None):
        """Initialize the fusion engine.

        Args:
            settings: Retrieval settings with fusion profiles and prefix size
        """
        self.settings = settings or RetrievalSettings()

    def fuse(
        self,
        keyword_results: Sequence[LexicalMatch],
        vector_results: Sequence[Tuple[Chunk, float]],
        intent: Intent = Intent.GENERAL,
        profile: Optional[FusionProfile] = None,
    ) -> List[SearchHit]:
        """Fuse two ranked lists into one.

        Args:
            keyword_results: Lexical matches, best first; plain (chunk, score)
                pairs are accepted and treated as non-exact
            vector_results: (chunk, cosine similarity) pairs, best first
            intent: Classified intent selecting the fusion profile
            profile: Explicit profile overriding the intent mapping

        Returns:
            Hits sorted by fused score descending, ties broken by chunk id
        """
        profile = profile or self.settings.fusion_profile_for(intent)
        prefix = self.settings.fusion_prefix

        fused: Dict[str, float] = {}
        hits: Dict[str, SearchHit] = {}

        def entry(chunk: Chunk) -> SearchHit:
            if chunk.id not in hits:
                hits[chunk.id] = SearchHit(chunk=chunk, score=0.0)
                fused[chunk.id] = 0.0
            return hits[chunk.id]

        for rank, result in enumerate(keyword_results[:prefix]):
            match = LexicalMatch(*result)
            chunk = match.chunk
            hit = entry(chunk)
            fused[chunk.id] += rrf_contribution(rank, profile.k, profile.keyword_weight)
            if match.exact:
                fused[chunk.id] += self.settings.exact_match_bonus
            hit.keyword_score = match.score
            hit.sources.append(KEYWORD_SOURCE)

        for rank, (chunk, similarity) in enumerate(vector_results[:prefix]):
            hit = entry(chunk)
            fused[chunk.id] += rrf_contribution(rank, profile.k, profile.vector_weight)
            if similarity >= self.settings.vector_bonus_similarity:
                fused[chunk.id] += self.settings.vector_bonus
            hit.vector_score = similarity
            hit.sources.append(VECTOR_SOURCE)

        results = []
        for chunk_id, hit in hits.items():
            hit.fused_score = fused[chunk_id]
            hit.score = fused[chunk_id]
            results.append(hit)
        results.sort(key=lambda h: (-h.score, h.chunk.id))

        logger.debug(
            f"Fused {len(keyword_results)} keyword and {len(vector_results)} vector results "
            f"into {len(results)} (k={profile.k}, intent={Intent(intent).value})"
        )
        return results

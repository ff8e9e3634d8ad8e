"""Reranker Adapter implementation.

Candidates from the top few documents are flattened into a single list and
scored with one external rerank call, instead of one call per document.
Scores are scattered back onto their chunks; chunks that were not sent, or
that the provider did not score, keep their fused score and relative order.
"""
import logging
from typing import Dict, List, Optional, Sequence

from retrieval_services.models import SearchHit
from retrieval_services.service_interfaces import RerankBackend
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)


class RerankerAdapter:
    """Batches cross-document candidates into one rerank request."""

    def __init__(self, backend: Optional[RerankBackend] = None,
                 settings: Optional[RetrievalSettings] = None):
        """Initialize the reranker adapter.

        Args:
            backend: External rerank capability; None disables reranking
            settings: Retrieval settings with document and per-document caps
        """
        self.backend = backend
        self.settings = settings or RetrievalSettings()

    def select_candidates(self, hits: Sequence[SearchHit],
                          max_candidates: Optional[int] = None) -> List[SearchHit]:
        """Pick the hits sent to the reranker.

        The first ``rerank_documents`` documents by best fused hit are
        selected, with at most ``rerank_per_document`` hits each, in fused order.
        """
        documents: List[str] = []
        for hit in hits:
            if hit.document_id not in documents:
                documents.append(hit.document_id)
            if len(documents) >= self.settings.rerank_documents:
                break

        per_document: Dict[str, int] = {}
        candidates = []
        for hit in hits:
            if max_candidates is not None and len(candidates) >= max_candidates:
                break
            if hit.document_id not in documents:
                continue
            if per_document.get(hit.document_id, 0) >= self.settings.rerank_per_document:
                continue
            per_document[hit.document_id] = per_document.get(hit.document_id, 0) + 1
            candidates.append(hit)
        return candidates

    async def rerank(self, query: str, hits: Sequence[SearchHit],
                     max_candidates: Optional[int] = None) -> List[SearchHit]:
        """Rerank filtered hits with a single provider call.

        Args:
            query: Query text
            hits: Filtered hits in fused order
            max_candidates: Overall cap on candidates sent (intent ``rerank_candidates``)

        Returns:
            Reranked hits first (by rerank score), then all other hits in their
            original order with their fused scores. On provider failure the
            input order is returned unchanged.
        """
        if self.backend is None or not hits:
            return list(hits)

        candidates = self.select_candidates(hits, max_candidates)
        if not candidates:
            return list(hits)

        try:
            scores = list(await self.backend.rerank(query, [hit.chunk.content for hit in candidates]))
        except Exception as e:
            logger.warning(f"Rerank failed, keeping filter order: {str(e)}")
            return list(hits)

        if len(scores) != len(candidates):
            logger.warning(f"Reranker returned {len(scores)} scores for {len(candidates)} candidates")

        reranked = []
        for index, hit in enumerate(candidates):
            score = scores[index] if index < len(scores) else None
            if score is None:
                continue
            try:
                score = float(score)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric rerank score {score!r} for {hit.chunk.id}")
                continue
            reranked.append(hit.model_copy(update={"rerank_score": score, "score": score}))

        reranked.sort(key=lambda h: (-h.score, h.chunk.id))
        reranked_ids = {hit.chunk.id for hit in reranked}
        remaining = [hit for hit in hits if hit.chunk.id not in reranked_ids]

        logger.debug(
            f"Reranked {len(reranked)} of {len(candidates)} candidates from "
            f"{len({hit.document_id for hit in candidates})} documents"
        )
        return reranked + remaining

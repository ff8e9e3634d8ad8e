"""Document Relevance Filter implementation.

Chunk-level fused scores are aggregated per source document, and documents
that fall under an adaptive threshold relative to the best document are
dropped. A document passes on any one of three tests:

1. its mean fused score is at least ``max_avg * relevance_ratio``;
2. its keyword score reaches ``strong_keyword_score``;
3. it has some keyword presence and its mean is at least half the threshold.

A document's keyword score is its best lexical chunk score plus
``title_match_score`` for every query token found in the document title.

Keyword rescue exists because a correct but lexically sparse document can
otherwise be drowned out by a dominant one.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from retrieval_services.lexical_index import tokenize
from retrieval_services.models import SearchHit
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class DocumentScore:
    """Aggregated relevance of one document."""
    document_id: str
    mean_score: float
    keyword_score: float
    chunk_count: int
    title_score: float = 0.0
    passed: bool = False
    reason: str = ""


@dataclass
class FilterOutcome:
    """Result of filtering a fused hit list."""
    hits: List[SearchHit] = field(default_factory=list)
    documents: Dict[str, DocumentScore] = field(default_factory=dict)
    threshold: float = 0.0

    @property
    def passed(self) -> List[str]:
        return [doc_id for doc_id, score in self.documents.items() if score.passed]

    @property
    def rejected(self) -> List[str]:
        return [doc_id for doc_id, score in self.documents.items() if not score.passed]

    @property
    def is_empty(self) -> bool:
        return not self.hits


class DocumentRelevanceFilter:
    """Drops documents whose chunks are weak relative to the best document."""

    def __init__(self, settings: Optional[RetrievalSettings] = None):
        self.settings = settings or RetrievalSettings()

    def title_score(self, query_tokens: Sequence[str], title: Optional[str]) -> float:
        if not title:
            return 0.0
        title_lower = title.lower()
        return self.settings.title_match_score * sum(1 for token in query_tokens if token in title_lower)

    def score_documents(self, hits: Sequence[SearchHit], query: Optional[str] = None,
                        titles: Optional[Dict[str, str]] = None) -> Dict[str, DocumentScore]:
        """Group hits by document and compute mean fused and keyword scores.

        Documents keep the order of their first hit.
        """
        query_tokens = tokenize(query) if query else []
        titles = titles or {}
        grouped: "OrderedDict[str, List[SearchHit]]" = OrderedDict()
        for hit in hits:
            grouped.setdefault(hit.document_id, []).append(hit)

        scores = {}
        for document_id, doc_hits in grouped.items():
            keyword_scores = [hit.keyword_score for hit in doc_hits if hit.keyword_score]
            title_score = self.title_score(query_tokens, titles.get(document_id))
            scores[document_id] = DocumentScore(
                document_id=document_id,
                mean_score=sum(hit.score for hit in doc_hits) / len(doc_hits),
                keyword_score=(max(keyword_scores) if keyword_scores else 0.0) + title_score,
                chunk_count=len(doc_hits),
                title_score=title_score,
            )
        return scores

    def apply(self, hits: Sequence[SearchHit], query: Optional[str] = None,
              titles: Optional[Dict[str, str]] = None) -> FilterOutcome:
        """Restrict a fused hit list to documents that pass the relevance tests.

        Args:
            hits: Fused hits in fused-score order
            query: Query text, matched against document titles
            titles: Document id to title mapping

        Returns:
            FilterOutcome with surviving hits in their original order; empty
            when no document passes
        """
        documents = self.score_documents(hits, query, titles)
        if not documents:
            return FilterOutcome()

        max_avg = max(score.mean_score for score in documents.values())
        threshold = max_avg * self.settings.relevance_ratio
        strong_keyword = self.settings.strong_keyword_score

        for score in documents.values():
            if score.mean_score >= threshold:
                score.passed, score.reason = True, "mean score above threshold"
            elif score.keyword_score >= strong_keyword:
                score.passed, score.reason = True, "strong keyword match"
            elif score.keyword_score > 0 and score.mean_score >= threshold / 2:
                score.passed, score.reason = True, "keyword presence"
            else:
                score.reason = "below threshold"

        kept = [hit for hit in hits if documents[hit.document_id].passed]
        outcome = FilterOutcome(hits=kept, documents=documents, threshold=threshold)

        if outcome.rejected:
            logger.info(
                f"Relevance filter kept {len(outcome.passed)} of {len(documents)} documents "
                f"(threshold={threshold:.4f}); dropped {outcome.rejected}"
            )
        return outcome

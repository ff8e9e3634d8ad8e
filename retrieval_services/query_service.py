"""Query Service implementation.

This service is the entry point for retrieval queries and coordinates the
other components: intent classification, the cache, lexical and vector search
(run concurrently), fusion, document filtering, reranking and parent context
attachment.
"""
import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

from retrieval_services.cache_service import QueryResultCache, make_cache_key
from retrieval_services.chunk_store import ChunkStore
from retrieval_services.errors import CacheMiss
from retrieval_services.fusion_service import FusionEngine
from retrieval_services.intent_classifier import HistoryItem, IntentClassifier
from retrieval_services.lexical_index import LexicalIndex
from retrieval_services.models import Chunk, Intent, IntentParams, SearchHit, SearchResponse
from retrieval_services.providers import prepare_text
from retrieval_services.relevance_filter import DocumentRelevanceFilter
from retrieval_services.reranker import RerankerAdapter
from retrieval_services.service_interfaces import EmbeddingBackend
from retrieval_services.settings import RetrievalSettings
from retrieval_services.vector_index import VectorIndex

# Configure logging
logger = logging.getLogger(__name__)

NO_RELEVANT_DOCUMENTS = "No relevant documents found"


class SearchPipeline:
    """Runs a query through the hybrid retrieval pipeline."""

    def __init__(
        self,
        store: ChunkStore,
        settings: Optional[RetrievalSettings] = None,
        embedder: Optional[EmbeddingBackend] = None,
        reranker: Optional[RerankerAdapter] = None,
        cache: Optional[QueryResultCache] = None,
        classifier: Optional[IntentClassifier] = None,
    ):
        """Initialize the search pipeline.

        Args:
            store: Chunk store holding documents and chunks
            settings: Retrieval settings
            embedder: Embedding capability for the query vector; None means lexical only
            reranker: Reranker adapter; None skips reranking
            cache: Query result cache; None disables caching
            classifier: Intent classifier
        """
        self.store = store
        self.settings = settings or RetrievalSettings()
        self.embedder = embedder
        self.reranker = reranker or RerankerAdapter(None, self.settings)
        self.cache = cache
        self.classifier = classifier or IntentClassifier(self.settings)
        self.lexical = LexicalIndex(exact_match_score=self.settings.exact_match_score)
        self.vector = VectorIndex()
        self.fusion = FusionEngine(self.settings)
        self.relevance_filter = DocumentRelevanceFilter(self.settings)
        # Per-session generation and in-flight count; entries go away with the last query
        self._generations: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}

    def cancel(self, session_id: str) -> None:
        """Mark the in-flight query of a session as superseded.

        Its results are still returned to whoever awaits them but are not cached.
        Sessions with nothing in flight are left alone.
        """
        if session_id in self._generations:
            self._generations[session_id] += 1

    def _begin(self, session_id: Optional[str]) -> Optional[int]:
        if session_id is None:
            return None
        self._in_flight[session_id] = self._in_flight.get(session_id, 0) + 1
        generation = self._generations.get(session_id, 0) + 1
        self._generations[session_id] = generation
        return generation

    def _end(self, session_id: Optional[str]) -> None:
        if session_id is None:
            return
        remaining = self._in_flight.get(session_id, 1) - 1
        if remaining > 0:
            self._in_flight[session_id] = remaining
        else:
            self._in_flight.pop(session_id, None)
            self._generations.pop(session_id, None)

    def _is_current(self, session_id: Optional[str], generation: Optional[int]) -> bool:
        return session_id is None or self._generations.get(session_id) == generation

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        history: Optional[Sequence[HistoryItem]] = None,
        session_id: Optional[str] = None,
        include_parents: bool = True,
    ) -> SearchResponse:
        """Run a query through the full pipeline.

        Args:
            query: Free-text query
            limit: Maximum number of hits; defaults to the intent's limit
            history: Recent conversation turns, oldest first
            session_id: Caller session; a newer query in the same session
                supersedes this one and prevents its cache write
            include_parents: Attach each hit's parent chunk as context

        Returns:
            SearchResponse with ranked hits, or an empty list and a message when
            no document is relevant
        """
        generation = self._begin(session_id)
        try:
            return await self._search(query, limit, history, session_id, generation, include_parents)
        finally:
            self._end(session_id)

    async def _search(self, query: str, limit: Optional[int], history: Optional[Sequence[HistoryItem]],
                      session_id: Optional[str], generation: Optional[int],
                      include_parents: bool) -> SearchResponse:
        started = time.perf_counter()

        intent = self.classifier.classify(query, history)
        retrieval_query = self.classifier.build_retrieval_query(query, history)
        params = intent.params
        effective_limit = limit if limit and limit > 0 else params.limit

        cache_key = make_cache_key(
            retrieval_query,
            intent.intent,
            {"limit": effective_limit, "retrieval": params, "include_parents": include_parents},
        )
        if self.cache is not None:
            try:
                hits = [hit.model_copy(deep=True) for hit in self.cache.lookup(cache_key)]
                logger.info(f"Cache hit for query '{query[:50]}'")
                return SearchResponse(query=query, intent=intent, hits=hits, from_cache=True,
                                      message=None if hits else NO_RELEVANT_DOCUMENTS)
            except CacheMiss:
                pass

        hits = await self._retrieve(retrieval_query, intent.intent, params)
        hits = hits[:effective_limit]
        if include_parents and hits:
            hits = await self.attach_parents(hits)

        if self.cache is not None:
            if self._is_current(session_id, generation):
                self.cache.set(cache_key, tuple(hit.model_copy(deep=True) for hit in hits))
            else:
                logger.info(f"Query '{query[:50]}' was superseded; not caching its results")

        logger.info(
            f"Query '{query[:50]}' ({intent.intent.value}, confidence {intent.confidence:.2f}) "
            f"returned {len(hits)} hits in {time.perf_counter() - started:.3f}s"
        )
        return SearchResponse(query=query, intent=intent, hits=hits,
                              message=None if hits else NO_RELEVANT_DOCUMENTS)

    async def _retrieve(self, query: str, intent: Intent, params: IntentParams) -> List[SearchHit]:
        candidates = await self.store.retrievable_chunks()
        if not candidates:
            return []

        prefix = self.settings.fusion_prefix
        keyword_results, vector_results = await asyncio.gather(
            asyncio.to_thread(self.lexical.search, query, candidates, prefix),
            self._vector_search(query, candidates, params.min_score, prefix),
        )

        fused = self.fusion.fuse(keyword_results, vector_results, intent)
        titles = {document.id: document.title for document in await self.store.list_documents()}
        outcome = self.relevance_filter.apply(fused, query=query, titles=titles)
        if outcome.is_empty:
            return []

        return await self.reranker.rerank(query, outcome.hits, max_candidates=params.rerank_candidates)

    async def _vector_search(self, query: str, candidates: List[Chunk], min_score: float, limit: int):
        """Embed the query and scan embedded chunks; degrades to no results on provider errors."""
        if self.embedder is None or not any(chunk.has_embedding for chunk in candidates):
            return []

        try:
            vectors = await self.embedder.embed([prepare_text(query, self.settings.embed_max_chars)])
        except Exception as e:
            logger.warning(f"Query embedding failed, continuing with lexical results only: {str(e)}")
            return []
        if not vectors:
            return []

        return await asyncio.to_thread(self.vector.search, vectors[0], candidates, min_score, limit)

    async def attach_parents(self, hits: List[SearchHit]) -> List[SearchHit]:
        """Attach each hit's parent chunk so the answer step gets surrounding context."""
        wanted: Dict[str, set] = {}
        for hit in hits:
            if hit.chunk.parent_id:
                wanted.setdefault(hit.document_id, set()).add(hit.chunk.parent_id)

        parents: Dict[str, Chunk] = {}
        for document_id, parent_ids in wanted.items():
            parents.update(await self.store.get_parents(document_id, parent_ids))

        return [
            hit.model_copy(update={"parent": parents.get(hit.chunk.parent_id)}) if hit.chunk.parent_id else hit
            for hit in hits
        ]

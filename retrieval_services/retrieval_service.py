"""Retrieval Service implementation.

This service wires the chunk store, chunk builder, embedding task queue and
search pipeline together and exposes the ingestion, search and task status
operations used by the HTTP app and the CLI.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from retrieval_services.cache_service import QueryResultCache
from retrieval_services.chunk_builder import ChunkBuilder
from retrieval_services.chunk_store import ChunkStore
from retrieval_services.models import (
    Document,
    DocumentStatus,
    EmbeddingStatus,
    EmbeddingTask,
    SearchResponse,
)
from retrieval_services.providers import EmbeddingClient, RerankClient
from retrieval_services.query_service import SearchPipeline
from retrieval_services.reranker import RerankerAdapter
from retrieval_services.service_interfaces import EmbeddingBackend, RerankBackend, ServiceInterface
from retrieval_services.settings import RetrievalSettings
from retrieval_services.task_queue import EmbeddingTaskQueue, TaskStore

# Configure logging
logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class RetrievalService(ServiceInterface):
    """Facade over ingestion, embedding jobs and hybrid search."""

    def __init__(
        self,
        settings: Optional[RetrievalSettings] = None,
        store: Optional[ChunkStore] = None,
        embedder: Optional[EmbeddingBackend] = None,
        rerank_backend: Optional[RerankBackend] = None,
        cache: Optional[QueryResultCache] = None,
    ):
        """Initialize the retrieval service.

        Args:
            settings: Retrieval settings; defaults to ``RetrievalSettings.from_env()``
            store: Chunk store; defaults to one rooted at ``settings.data_dir``
            embedder: Embedding backend; defaults to the HTTP client when an API key is set
            rerank_backend: Rerank backend; defaults to the HTTP client when an API key is set
            cache: Query result cache
        """
        self.settings = settings or RetrievalSettings.from_env()
        self.store = store or ChunkStore(self.settings.data_dir)

        if embedder is None and self.settings.api_key:
            embedder = EmbeddingClient(self.settings)
        if rerank_backend is None and self.settings.api_key:
            rerank_backend = RerankClient(self.settings)
        self.embedder = embedder
        self.rerank_backend = rerank_backend

        self.chunk_builder = ChunkBuilder(self.settings)
        self.cache = cache or QueryResultCache(self.settings.cache_ttl, self.settings.cache_sweep_interval)
        self.task_store = TaskStore(self.settings.max_tasks_kept)
        self.task_queue = EmbeddingTaskQueue(self.store, self.task_store, self.embedder, self.settings)
        self.pipeline = SearchPipeline(
            self.store,
            settings=self.settings,
            embedder=self.embedder,
            reranker=RerankerAdapter(self.rerank_backend, self.settings),
            cache=self.cache,
        )
        self.is_running = True

        if self.embedder is None:
            logger.warning("No embedding provider configured; search will be lexical only")
        logger.info("Retrieval Service initialized")

    async def startup(self) -> List[EmbeddingTask]:
        """Start the cache sweeper and recover documents with missing embeddings."""
        self.cache.start_sweeper()
        return await self.task_queue.recover()

    async def ingest_document(
        self,
        text: str,
        title: str,
        document_id: Optional[str] = None,
        category: str = "general",
        embed: bool = True,
    ) -> Document:
        """Chunk and store a document, then schedule its embedding task.

        The document is ``ready`` as soon as its chunks are stored; embeddings
        arrive later and are tracked by ``embedding_status``.

        Args:
            text: Already extracted plain text or Markdown
            title: Document title
            document_id: Identifier; generated when omitted
            category: Free-form category label
            embed: Enqueue the embedding task after chunking

        Returns:
            The stored document
        """
        document_id = document_id or f"doc_{uuid.uuid4().hex[:12]}"
        document = Document(
            id=document_id,
            title=title,
            category=category,
            byte_size=len(text.encode("utf-8")),
            content_preview=text[:PREVIEW_CHARS],
        )
        await self.store.save_document(document)

        try:
            chunks = self.chunk_builder.build(document_id, text)
            await self.store.save_chunks(document_id, chunks)
        except Exception as e:
            logger.error(f"Ingestion of document {document_id} failed: {str(e)}")
            await self.store.update_document(document_id, status=DocumentStatus.ERROR, error=str(e))
            raise

        has_retrievable = any(chunk.is_retrievable for chunk in chunks)
        document = await self.store.update_document(
            document_id,
            status=DocumentStatus.READY,
            embedding_status=EmbeddingStatus.PENDING if has_retrievable else EmbeddingStatus.COMPLETE,
        )
        self.cache.clear()

        if embed and has_retrievable:
            await self.task_queue.enqueue(document_id, reason="ingest")
        logger.info(f"Ingested document {document_id} ({title}) with {len(chunks)} chunks")
        return document

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document, cancelling its embedding task first."""
        await self.task_queue.cancel_document(document_id)
        deleted = await self.store.delete_document(document_id)
        if deleted:
            self.cache.clear()
        return deleted

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self.store.get_document(document_id)

    async def list_documents(self) -> List[Document]:
        return await self.store.list_documents()

    async def chunk_stats(self, document_id: str) -> Dict[str, int]:
        return await self.store.chunk_stats(document_id)

    async def search(
        self,
        query: str,
        limit: Optional[int] = None,
        history: Optional[Sequence[Any]] = None,
        session_id: Optional[str] = None,
        include_parents: bool = True,
    ) -> SearchResponse:
        return await self.pipeline.search(query, limit=limit, history=history,
                                          session_id=session_id, include_parents=include_parents)

    async def embed_document(self, document_id: str) -> Optional[EmbeddingTask]:
        """Enqueue an embedding task on demand; returns the active task if one exists."""
        return await self.task_queue.enqueue(document_id, reason="manual")

    def task_status(self, document_id: str) -> Optional[EmbeddingTask]:
        """Most recent or active embedding task of a document."""
        return self.task_store.latest_for_document(document_id)

    def get_task(self, task_id: str) -> Optional[EmbeddingTask]:
        return self.task_store.get(task_id)

    async def recover(self) -> List[EmbeddingTask]:
        return await self.task_queue.recover()

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        return {
            "status": "healthy" if self.is_running else "stopped",
            "version": "1.0.0",
            "store": await self.store.health_check(),
            "cache": await self.cache.health_check(),
            "task_queue": await self.task_queue.health_check(),
            "reranker": self.rerank_backend is not None,
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Retrieval Service")
        self.is_running = False
        await self.task_queue.shutdown()
        await self.cache.shutdown()
        await self.store.shutdown()
        for backend in (self.embedder, self.rerank_backend):
            if backend is not None:
                await backend.aclose()

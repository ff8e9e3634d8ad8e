"""FastAPI app for the retrieval engine.

Exposes ingestion, search, task status and cache statistics over HTTP.
"""
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from retrieval_services.models import ConversationTurn, Document, EmbeddingTask, SearchResponse
from retrieval_services.retrieval_service import RetrievalService

# Configure logging
logger = logging.getLogger(__name__)


class IngestRequest(BaseModel):
    """Document ingestion request model."""
    title: str
    text: str
    document_id: Optional[str] = None
    category: str = "general"


class SearchRequest(BaseModel):
    """Search request model."""
    query: str = Field(..., min_length=1)
    limit: Optional[int] = Field(default=None, ge=1, le=200)
    history: List[ConversationTurn] = Field(default_factory=list)
    session_id: Optional[str] = None
    include_parents: bool = True


class TaskResponse(BaseModel):
    """Task status response model."""
    document_id: str
    task: Optional[EmbeddingTask] = None


def create_fastapi_app(service: Optional[RetrievalService] = None) -> FastAPI:
    """Create a FastAPI app for the retrieval engine.

    Args:
        service: Preconfigured service; built from the environment when omitted
    """
    app = FastAPI(title="Knowledge Base Retrieval Service", version="1.0.0")
    service = service or RetrievalService()
    app.state.service = service

    @app.on_event("startup")
    async def startup_event():
        recovered = await service.startup()
        logger.info(f"Startup recovery scheduled {len(recovered)} embedding tasks")

    @app.on_event("shutdown")
    async def shutdown_event():
        await service.shutdown()

    async def require_document(document_id: str) -> Document:
        document = await service.get_document(document_id)
        if document is None:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        return document

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return await service.health_check()

    @app.post("/documents", response_model=Document)
    async def ingest(request: IngestRequest):
        """Chunk and store a document; embeddings are computed in the background."""
        if not request.text.strip():
            raise HTTPException(status_code=400, detail="Document text is empty")
        return await service.ingest_document(
            request.text,
            request.title,
            document_id=request.document_id,
            category=request.category,
        )

    @app.get("/documents", response_model=List[Document])
    async def list_documents():
        return await service.list_documents()

    @app.get("/documents/{document_id}", response_model=Document)
    async def get_document(document_id: str):
        return await require_document(document_id)

    @app.delete("/documents/{document_id}")
    async def delete_document(document_id: str):
        if not await service.delete_document(document_id):
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")
        return {"status": "deleted", "document_id": document_id}

    @app.get("/documents/{document_id}/chunks/stats")
    async def chunk_stats(document_id: str):
        await require_document(document_id)
        return await service.chunk_stats(document_id)

    @app.post("/documents/{document_id}/embeddings", response_model=TaskResponse)
    async def embed_document(document_id: str):
        """Start (or return the active) embedding task for a document."""
        await require_document(document_id)
        task = await service.embed_document(document_id)
        return TaskResponse(document_id=document_id, task=task)

    @app.get("/documents/{document_id}/task", response_model=TaskResponse)
    async def document_task(document_id: str):
        """Most recent or active embedding task, for progress display."""
        await require_document(document_id)
        return TaskResponse(document_id=document_id, task=service.task_status(document_id))

    @app.get("/tasks/{task_id}", response_model=EmbeddingTask)
    async def get_task(task_id: str):
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return task

    @app.post("/search", response_model=SearchResponse)
    async def search(request: SearchRequest):
        """Run a hybrid search."""
        return await service.search(
            request.query,
            limit=request.limit,
            history=request.history,
            session_id=request.session_id,
            include_parents=request.include_parents,
        )

    @app.get("/cache/stats")
    async def cache_stats():
        return service.cache.get_stats()

    return app

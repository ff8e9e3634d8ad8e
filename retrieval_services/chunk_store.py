"""Chunk Store implementation.

Documents and their chunks are kept as document-scoped collections: one JSON
file per document under ``chunks/`` and one metadata file under
``documents/``. A single document's chunks can be loaded or rewritten without
touching the rest of the corpus. Without a data directory the store is purely
in-memory, which is what the tests use.
"""
import asyncio
import json
import logging
import os
import weakref
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from retrieval_services.chunk_builder import validate_hierarchy
from retrieval_services.errors import DataIntegrityError
from retrieval_services.models import Chunk, ChunkType, Document, DocumentStatus
from retrieval_services.service_interfaces import ServiceInterface

# Configure logging
logger = logging.getLogger(__name__)


def _write_json(path: Path, payload: Any) -> None:
    """Write JSON atomically through a temporary file and rename."""
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False)
    os.replace(tmp_path, path)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class ChunkStore(ServiceInterface):
    """Document-scoped persistence for documents and chunks."""

    def __init__(self, data_dir: Optional[str] = None):
        """Initialize the chunk store.

        Args:
            data_dir: Directory for JSON collections; None keeps everything in memory
        """
        self.data_dir = Path(data_dir) if data_dir else None
        self.documents: Dict[str, Document] = {}
        self.collections: Dict[str, List[Chunk]] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._documents_loaded = self.data_dir is None

        if self.data_dir is not None:
            (self.data_dir / "chunks").mkdir(parents=True, exist_ok=True)
            (self.data_dir / "documents").mkdir(parents=True, exist_ok=True)

        self.is_running = True
        logger.info(f"Chunk Store initialized with {'file' if self.data_dir else 'in-memory'} backend")

    def _lock(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        return lock

    def _chunks_path(self, document_id: str) -> Path:
        return self.data_dir / "chunks" / f"{document_id}.json"

    def _document_path(self, document_id: str) -> Path:
        return self.data_dir / "documents" / f"{document_id}.json"

    async def _ensure_documents(self) -> None:
        if self._documents_loaded:
            return

        def load_all() -> List[Document]:
            return [
                Document.model_validate(_read_json(path, {}))
                for path in sorted((self.data_dir / "documents").glob("*.json"))
            ]

        for document in await asyncio.to_thread(load_all):
            self.documents.setdefault(document.id, document)
        self._documents_loaded = True
        logger.info(f"Loaded {len(self.documents)} documents from {self.data_dir}")

    async def _collection(self, document_id: str) -> List[Chunk]:
        if document_id in self.collections:
            return self.collections[document_id]
        if self.data_dir is None:
            return []

        raw = await asyncio.to_thread(_read_json, self._chunks_path(document_id), [])
        chunks = [Chunk.model_validate(item) for item in raw]
        if chunks:
            self.collections[document_id] = chunks
        return chunks

    async def _persist_chunks(self, document_id: str, chunks: List[Chunk]) -> None:
        if self.data_dir is not None:
            payload = [chunk.model_dump(mode="json") for chunk in chunks]
            await asyncio.to_thread(_write_json, self._chunks_path(document_id), payload)
        self.collections[document_id] = chunks

    async def _persist_document(self, document: Document) -> None:
        if self.data_dir is not None:
            await asyncio.to_thread(_write_json, self._document_path(document.id),
                                    document.model_dump(mode="json"))
        self.documents[document.id] = document

    # Documents

    async def save_document(self, document: Document) -> Document:
        await self._ensure_documents()
        async with self._lock(document.id):
            await self._persist_document(document)
        return document

    async def get_document(self, document_id: str) -> Optional[Document]:
        await self._ensure_documents()
        return self.documents.get(document_id)

    async def list_documents(self) -> List[Document]:
        await self._ensure_documents()
        return sorted(self.documents.values(), key=lambda d: (d.uploaded_at, d.id))

    async def update_document(self, document_id: str, **changes) -> Document:
        """Apply field changes to a document record.

        Raises:
            KeyError: if the document does not exist
        """
        await self._ensure_documents()
        async with self._lock(document_id):
            current = self.documents.get(document_id)
            if current is None:
                raise KeyError(document_id)
            updated = current.model_copy(update=changes)
            await self._persist_document(updated)
        return updated

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document together with its chunk collection."""
        await self._ensure_documents()
        async with self._lock(document_id):
            existed = self.documents.pop(document_id, None) is not None
            existed = self.collections.pop(document_id, None) is not None or existed
            if self.data_dir is not None:
                for path in (self._chunks_path(document_id), self._document_path(document_id)):
                    if path.exists():
                        existed = True
                        await asyncio.to_thread(path.unlink)
        if existed:
            logger.info(f"Deleted document {document_id}")
        return existed

    # Chunks

    async def save_chunks(self, document_id: str, chunks: List[Chunk]) -> int:
        """Store the chunk collection of a document in bulk.

        Raises:
            DataIntegrityError: if a chunk belongs to another document or has a
                dangling parent reference
        """
        foreign = [chunk.id for chunk in chunks if chunk.document_id != document_id]
        if foreign:
            raise DataIntegrityError(f"Chunks {foreign[:3]} do not belong to document {document_id}")
        validate_hierarchy(chunks)

        async with self._lock(document_id):
            ordered = sorted(chunks, key=lambda c: c.chunk_index)
            await self._persist_chunks(document_id, ordered)
        logger.info(f"Saved {len(chunks)} chunks for document {document_id}")
        return len(chunks)

    async def get_chunks(self, document_id: str) -> List[Chunk]:
        return list(await self._collection(document_id))

    async def get_chunk(self, document_id: str, chunk_id: str) -> Optional[Chunk]:
        for chunk in await self._collection(document_id):
            if chunk.id == chunk_id:
                return chunk
        return None

    async def get_parents(self, document_id: str, parent_ids: Iterable[str]) -> Dict[str, Chunk]:
        wanted = set(parent_ids)
        return {
            chunk.id: chunk
            for chunk in await self._collection(document_id)
            if chunk.id in wanted and chunk.chunk_type == ChunkType.PARENT
        }

    async def retrievable_chunks(self, document_ids: Optional[Iterable[str]] = None) -> List[Chunk]:
        """Return child and window chunks of ready documents (or the given ones)."""
        await self._ensure_documents()
        if document_ids is None:
            document_ids = [doc.id for doc in await self.list_documents() if doc.status == DocumentStatus.READY]

        chunks = []
        for document_id in document_ids:
            chunks.extend(c for c in await self._collection(document_id) if c.is_retrievable)
        return chunks

    async def chunks_needing_embedding(self, document_id: str) -> List[Chunk]:
        return [
            chunk for chunk in await self._collection(document_id)
            if chunk.is_retrievable and not chunk.has_embedding
        ]

    async def update_embeddings(self, document_id: str, embeddings: Dict[str, List[float]]) -> int:
        """Assign embeddings to chunks of one document in a single write.

        Only the ``embedding`` field is touched; content and structure are
        left as they are.

        Args:
            document_id: Document owning the chunks
            embeddings: Mapping of chunk id to vector

        Returns:
            Number of chunks updated
        """
        if not embeddings:
            return 0

        await self._ensure_documents()
        async with self._lock(document_id):
            current = await self._collection(document_id)
            if document_id not in self.documents or not current:
                logger.warning(f"Document {document_id} was deleted; dropping {len(embeddings)} embeddings")
                return 0
            updated = 0
            new_chunks = []
            for chunk in current:
                vector = embeddings.get(chunk.id)
                if vector is not None and chunk.is_retrievable:
                    chunk = chunk.model_copy(update={"embedding": [float(v) for v in vector]})
                    updated += 1
                new_chunks.append(chunk)

            missing = len(embeddings) - updated
            if missing:
                logger.warning(f"{missing} embeddings for document {document_id} matched no stored chunk")
            await self._persist_chunks(document_id, new_chunks)
        return updated

    async def chunk_stats(self, document_id: str) -> Dict[str, int]:
        chunks = await self._collection(document_id)
        retrievable = [chunk for chunk in chunks if chunk.is_retrievable]
        with_embedding = sum(1 for chunk in retrievable if chunk.has_embedding)
        return {
            "total": len(chunks),
            "parent_count": len(chunks) - len(retrievable),
            "child_count": sum(1 for chunk in retrievable if chunk.chunk_type == ChunkType.CHILD),
            "window_count": sum(1 for chunk in retrievable if chunk.chunk_type == ChunkType.WINDOW),
            "with_embedding": with_embedding,
            "requiring_embedding": len(retrievable),
            "missing_embedding": len(retrievable) - with_embedding,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        await self._ensure_documents()
        return {
            "status": "healthy" if self.is_running else "stopped",
            "backend": "file" if self.data_dir else "memory",
            "documents": len(self.documents),
            "loaded_collections": len(self.collections),
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        logger.info("Shutting down Chunk Store")
        self.is_running = False

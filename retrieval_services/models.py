"""Data models shared across the retrieval services.

Documents and chunks are the persisted records; tasks, intents and search
hits are produced at runtime. All models are pydantic so they serialize
straight into the chunk store files and the HTTP responses.
"""
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


class ChunkType(str, Enum):
    PARENT = "parent"
    CHILD = "child"
    WINDOW = "window"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.PROCESSING)


class Intent(str, Enum):
    COMMAND = "command"
    TROUBLESHOOT = "troubleshoot"
    CONFIGURATION = "configuration"
    EXPLANATION = "explanation"
    COMPARISON = "comparison"
    PERFORMANCE = "performance"
    BEST_PRACTICE = "best_practice"
    VERIFICATION = "verification"
    QUESTION = "question"
    GENERAL = "general"


class Document(BaseModel):
    """Metadata for an ingested source document."""
    id: str
    title: str
    category: str = "general"
    byte_size: int = 0
    uploaded_at: float = Field(default_factory=time.time)
    status: DocumentStatus = DocumentStatus.PROCESSING
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    content_preview: str = ""
    error: Optional[str] = None


class Chunk(BaseModel):
    """A stored passage of document text."""
    id: str
    document_id: str
    chunk_index: int
    chunk_type: ChunkType
    content: str
    token_count: int = 0
    parent_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    start: int = 0
    end: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_retrievable(self) -> bool:
        """Child and window chunks are scored; parents only supply context."""
        return self.chunk_type != ChunkType.PARENT

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


class EmbeddingTask(BaseModel):
    """Progress record of a background embedding job for one document."""
    id: str = Field(default_factory=lambda: f"task_{uuid.uuid4().hex[:12]}")
    document_id: str
    status: TaskStatus = TaskStatus.PENDING
    current: int = 0
    total: int = 0
    progress: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, int]] = None
    reason: str = "manual"
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class IntentParams(BaseModel):
    """Retrieval parameters derived from a query intent."""
    limit: int = 20
    rerank_candidates: int = 60
    min_score: float = 0.3


class IntentResult(BaseModel):
    """Outcome of intent classification for one query."""
    intent: Intent = Intent.GENERAL
    confidence: float = 0.5
    reasons: List[str] = Field(default_factory=list)
    params: IntentParams = Field(default_factory=IntentParams)
    scores: Dict[str, float] = Field(default_factory=dict)
    sub_intents: List[Intent] = Field(default_factory=list)


class ConversationTurn(BaseModel):
    """A single recent message supplied alongside a query."""
    role: str = "user"
    content: str


class SearchHit(BaseModel):
    """A chunk ranked by the query pipeline."""
    chunk: Chunk
    score: float
    sources: List[str] = Field(default_factory=list)
    keyword_score: Optional[float] = None
    vector_score: Optional[float] = None
    fused_score: float = 0.0
    rerank_score: Optional[float] = None
    parent: Optional[Chunk] = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id


class SearchResponse(BaseModel):
    """Final answer of the query pipeline."""
    query: str
    intent: IntentResult
    hits: List[SearchHit] = Field(default_factory=list)
    from_cache: bool = False
    message: Optional[str] = None

"""Embedding Task Queue implementation.

This service computes missing embeddings for ingested chunks in the
background. Each document gets at most one active task; tasks move through
``pending -> processing -> completed | failed``. Chunks are embedded in
fixed-size batches, each batch retried with exponential backoff, and every
successful batch is persisted with a single write that only touches the
``embedding`` fields.

A failed batch is counted, not raised: only configuration errors and
unexpected enumeration or persistence errors fail a task outright.
"""
import asyncio
import inspect
import logging
import time
import weakref
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from retrieval_services.chunk_store import ChunkStore
from retrieval_services.errors import ConfigurationError, DataIntegrityError, TransientProviderError
from retrieval_services.models import Chunk, DocumentStatus, EmbeddingStatus, EmbeddingTask, TaskStatus
from retrieval_services.providers import prepare_text
from retrieval_services.service_interfaces import EmbeddingBackend, ServiceInterface
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)

TaskListener = Callable[[EmbeddingTask], Any]


class TaskStore:
    """Registry of embedding tasks.

    Creation goes through ``create_if_idle``, which holds a per-document lock
    across the active-task check, the pending-chunk count and the insert, so
    two callers can never start concurrent tasks for the same document.
    """

    def __init__(self, max_tasks: int = 100):
        self.max_tasks = max_tasks
        self.tasks: Dict[str, EmbeddingTask] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        return lock

    async def create_if_idle(
        self,
        document_id: str,
        reason: str = "manual",
        count_pending: Optional[Callable[[], Awaitable[int]]] = None,
        require_pending: bool = False,
    ) -> Tuple[Optional[EmbeddingTask], bool]:
        """Create a task unless one is already active for the document.

        Args:
            document_id: Document to embed
            reason: Why the task is created (manual, ingest, recovery)
            count_pending: Coroutine factory returning the number of chunks to embed
            require_pending: Skip creation when nothing needs embedding

        Returns:
            ``(task, True)`` for a new task, ``(active_task, False)`` when one is
            already running, ``(None, False)`` when nothing needed embedding
        """
        async with self._lock(document_id):
            active = self.active_for_document(document_id)
            if active is not None:
                logger.info(f"Document {document_id} already has active task {active.id}")
                return active, False

            total = await count_pending() if count_pending is not None else 0
            if require_pending and total == 0:
                return None, False

            task = EmbeddingTask(document_id=document_id, reason=reason, total=total)
            self.tasks[task.id] = task

        self.cleanup()
        logger.info(f"Created embedding task {task.id} for document {document_id} ({reason}, {total} chunks)")
        return task, True

    def get(self, task_id: str) -> Optional[EmbeddingTask]:
        return self.tasks.get(task_id)

    def update(self, task_id: str, **changes) -> EmbeddingTask:
        """Replace a task with an updated copy.

        Raises:
            KeyError: if the task is unknown
        """
        changes["updated_at"] = time.time()
        task = self.tasks[task_id].model_copy(update=changes)
        self.tasks[task_id] = task
        return task

    def list_for_document(self, document_id: str) -> List[EmbeddingTask]:
        """Tasks of a document, oldest first."""
        return [task for task in self.tasks.values() if task.document_id == document_id]

    def active_for_document(self, document_id: str) -> Optional[EmbeddingTask]:
        for task in self.list_for_document(document_id):
            if task.status.is_active:
                return task
        return None

    def latest_for_document(self, document_id: str) -> Optional[EmbeddingTask]:
        """The active task if there is one, otherwise the most recent."""
        active = self.active_for_document(document_id)
        if active is not None:
            return active
        tasks = self.list_for_document(document_id)
        return tasks[-1] if tasks else None

    def cleanup(self) -> int:
        """Keep the most recent ``max_tasks`` tasks; active tasks are never dropped."""
        excess = len(self.tasks) - self.max_tasks
        if excess <= 0:
            return 0
        removable = [task_id for task_id, task in self.tasks.items() if not task.status.is_active]
        for task_id in removable[:excess]:
            del self.tasks[task_id]
        return min(excess, len(removable))


class EmbeddingTaskQueue(ServiceInterface):
    """Background worker computing missing chunk embeddings."""

    def __init__(
        self,
        store: ChunkStore,
        task_store: TaskStore,
        embedder: Optional[EmbeddingBackend],
        settings: Optional[RetrievalSettings] = None,
    ):
        """Initialize the embedding task queue.

        Args:
            store: Chunk store shared with the query path
            task_store: Registry of embedding tasks
            embedder: External embedding capability; None fails tasks with ConfigurationError
            settings: Batch size, retry and truncation settings
        """
        self.store = store
        self.task_store = task_store
        self.embedder = embedder
        self.settings = settings or RetrievalSettings()
        self.listeners: List[TaskListener] = []
        self._running: Dict[str, asyncio.Task] = {}
        self.is_running = True

        logger.info(f"Embedding Task Queue initialized with batch size {self.settings.embedding_batch_size}")

    def add_listener(self, listener: TaskListener) -> None:
        """Register a callback receiving every task update."""
        self.listeners.append(listener)

    async def _notify(self, task: EmbeddingTask) -> None:
        for listener in self.listeners:
            try:
                result = listener(task)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Task listener failed for {task.id}: {str(e)}")

    async def _update(self, task: EmbeddingTask, **changes) -> EmbeddingTask:
        task = self.task_store.update(task.id, **changes)
        await self._notify(task)
        return task

    def _split_embeddable(self, chunks: List[Chunk]) -> Tuple[List[Chunk], List[Chunk]]:
        embeddable, skipped = [], []
        for chunk in chunks:
            if len(chunk.content.strip()) < self.settings.min_embed_chars:
                skipped.append(chunk)
            else:
                embeddable.append(chunk)
        return embeddable, skipped

    async def _count_pending(self, document_id: str) -> int:
        embeddable, _ = self._split_embeddable(await self.store.chunks_needing_embedding(document_id))
        return len(embeddable)

    async def enqueue(self, document_id: str, reason: str = "manual",
                      require_pending: bool = False) -> Optional[EmbeddingTask]:
        """Create a task for a document and start it in the background.

        Returns immediately. When a task is already active for the document
        that task is returned instead of starting a second one.
        """
        task, _ = await self._start(document_id, reason, require_pending)
        return task

    async def _start(self, document_id: str, reason: str,
                     require_pending: bool) -> Tuple[Optional[EmbeddingTask], bool]:
        task, created = await self.task_store.create_if_idle(
            document_id,
            reason=reason,
            count_pending=lambda: self._count_pending(document_id),
            require_pending=require_pending,
        )
        if created:
            await self._notify(task)
            self._running[task.id] = asyncio.create_task(self.run(task))
        return task, created

    async def recover(self) -> List[EmbeddingTask]:
        """Create tasks for ready documents that still have chunks without embeddings.

        Documents with an active task are skipped, so calling this repeatedly
        never duplicates work.
        """
        created = []
        for document in await self.store.list_documents():
            if document.status != DocumentStatus.READY:
                continue
            task, is_new = await self._start(document.id, "recovery", require_pending=True)
            if is_new:
                created.append(task)

        if created:
            logger.info(f"Recovery created {len(created)} embedding tasks")
        else:
            logger.info("Recovery found no documents with missing embeddings")
        return created

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.settings.embedding_max_retries + 1),
            wait=wait_exponential(multiplier=self.settings.retry_backoff, max=self.settings.retry_backoff_max),
            before_sleep=lambda retry_state: logger.info(
                f"Retrying embedding batch after error: {retry_state.outcome.exception()}, "
                f"attempt {retry_state.attempt_number}/{self.settings.embedding_max_retries + 1}"
            ),
            reraise=True,
        )
        vectors = await retrying(self.embedder.embed, texts)
        if len(vectors) != len(texts):
            raise TransientProviderError(f"Expected {len(texts)} vectors, got {len(vectors)}")
        return vectors

    async def run(self, task: EmbeddingTask) -> EmbeddingTask:
        """Process one task to a terminal state.

        Args:
            task: A pending task created by ``enqueue``

        Returns:
            The task in its final state
        """
        document_id = task.document_id
        try:
            task = await self._update(task, status=TaskStatus.PROCESSING)
            if self.embedder is None:
                raise ConfigurationError("No embedding provider configured")

            pending = await self.store.chunks_needing_embedding(document_id)
            embeddable, skipped = self._split_embeddable(pending)
            for chunk in skipped:
                error = DataIntegrityError(f"Chunk {chunk.id} is too short to embed")
                logger.warning(f"Skipping chunk: {error}")

            total = len(embeddable)
            task = await self._update(task, total=total, current=0, progress=0)

            batch_size = max(1, self.settings.embedding_batch_size)
            success_count = 0
            fail_count = 0
            for offset in range(0, total, batch_size):
                batch = embeddable[offset:offset + batch_size]
                texts = [prepare_text(chunk.content, self.settings.embed_max_chars) for chunk in batch]
                try:
                    vectors = await self._embed_batch(texts)
                except ConfigurationError:
                    raise
                except Exception as e:
                    fail_count += len(batch)
                    logger.warning(f"Embedding batch {offset // batch_size + 1} of document {document_id} failed: {str(e)}")
                else:
                    updated = await self.store.update_embeddings(
                        document_id, {chunk.id: vector for chunk, vector in zip(batch, vectors)}
                    )
                    success_count += updated
                    fail_count += len(batch) - updated

                current = min(offset + len(batch), total)
                task = await self._update(task, current=current, progress=round(current / total * 100))
                logger.debug(f"Task {task.id}: {current}/{total} chunks processed")

                if current < total and self.settings.batch_delay > 0:
                    await asyncio.sleep(self.settings.batch_delay)

            result = {
                "success_count": success_count,
                "fail_count": fail_count,
                "skipped_count": len(skipped),
                "total": total,
            }
            task = await self._update(task, status=TaskStatus.COMPLETED, progress=100,
                                      current=total, result=result)
            complete = fail_count == 0 and not skipped
            await self._mark_document(document_id, EmbeddingStatus.COMPLETE if complete else EmbeddingStatus.INCOMPLETE)
            logger.info(f"Embedding task {task.id} completed: {success_count} ok, {fail_count} failed, {len(skipped)} skipped")

        except asyncio.CancelledError:
            await self._fail(task, "cancelled")
            raise
        except ConfigurationError as e:
            logger.error(f"Embedding task {task.id} failed: {str(e)}")
            task = await self._fail(task, str(e))
        except Exception as e:
            logger.exception(f"Embedding task {task.id} failed unexpectedly: {str(e)}")
            task = await self._fail(task, str(e))
        finally:
            self._running.pop(task.id, None)
        return task

    async def _fail(self, task: EmbeddingTask, error: str) -> EmbeddingTask:
        task = await self._update(task, status=TaskStatus.FAILED, error=error)
        await self._mark_document(task.document_id, EmbeddingStatus.INCOMPLETE)
        return task

    async def _mark_document(self, document_id: str, status: EmbeddingStatus) -> None:
        try:
            await self.store.update_document(document_id, embedding_status=status)
        except KeyError:
            logger.warning(f"Document {document_id} disappeared before its embedding status was recorded")

    async def cancel_document(self, document_id: str) -> Optional[EmbeddingTask]:
        """Cancel the active task of a document and wait for it to stop.

        Returns:
            The cancelled task, or None when the document had no running task
        """
        active = self.task_store.active_for_document(document_id)
        job = self._running.get(active.id) if active is not None else None
        if job is None:
            return None

        job.cancel()
        await asyncio.gather(job, return_exceptions=True)
        self._running.pop(active.id, None)

        # A job cancelled before its first step never reaches run()'s handler
        task = self.task_store.get(active.id)
        if task.status.is_active:
            task = await self._update(task, status=TaskStatus.FAILED, error="cancelled")
        logger.info(f"Cancelled embedding task {task.id} of document {document_id}")
        return task

    async def wait_idle(self) -> None:
        """Wait until every background task has reached a terminal state."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        return {
            "status": "healthy" if self.is_running else "stopped",
            "embedder": self.embedder is not None,
            "running_tasks": len(self._running),
            "known_tasks": len(self.task_store.tasks),
        }

    async def shutdown(self) -> None:
        """Gracefully shutdown the service, cancelling running tasks."""
        logger.info("Shutting down Embedding Task Queue")
        self.is_running = False
        running = list(self._running.values())
        for job in running:
            job.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        self._running.clear()

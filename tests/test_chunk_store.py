#!/usr/bin/env python3
"""
Tests for the document-scoped chunk store and settings loading.
"""

import asyncio
import gc
import json
import os
import sys

import pytest

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.chunk_builder import ChunkBuilder
from retrieval_services.chunk_store import ChunkStore
from retrieval_services.errors import DataIntegrityError
from retrieval_services.models import Document, DocumentStatus, Intent
from retrieval_services.settings import RetrievalSettings

SAMPLE_TEXT = """## Interfaces

Interfaces are named swp1 through swp64. Breakout ports get a suffix.

## Bonds

Bonds combine interfaces with LACP.
"""


async def populate(store, document_id="doc1", status=DocumentStatus.READY):
    await store.save_document(Document(id=document_id, title=document_id, status=status))
    chunks = ChunkBuilder().build(document_id, SAMPLE_TEXT)
    await store.save_chunks(document_id, chunks)
    return chunks


def test_file_backend_round_trip(tmp_path):
    async def write():
        store = ChunkStore(str(tmp_path))
        chunks = await populate(store)
        child = next(chunk for chunk in chunks if chunk.is_retrievable)
        await store.update_embeddings("doc1", {child.id: [0.5, 0.5]})
        return chunks, child

    async def read():
        store = ChunkStore(str(tmp_path))
        return await store.list_documents(), await store.get_chunks("doc1"), await store.chunk_stats("doc1")

    chunks, child = asyncio.run(write())
    documents, stored, stats = asyncio.run(read())

    assert [document.id for document in documents] == ["doc1"]
    assert [chunk.id for chunk in stored] == [chunk.id for chunk in chunks]
    assert next(chunk for chunk in stored if chunk.id == child.id).embedding == [0.5, 0.5]
    assert stats["with_embedding"] == 1
    assert stats["missing_embedding"] == stats["requiring_embedding"] - 1

    raw = json.loads((tmp_path / "chunks" / "doc1.json").read_text(encoding="utf-8"))
    assert len(raw) == len(chunks)
    assert not list((tmp_path / "chunks").glob("*.tmp")), "Writes go through a temporary file"


def test_retrievable_chunks_only_from_ready_documents():
    async def run():
        store = ChunkStore()
        await populate(store, "ready")
        await populate(store, "pending", status=DocumentStatus.PROCESSING)
        return await store.retrievable_chunks(), await store.retrievable_chunks(["pending"])

    ready_only, explicit = asyncio.run(run())
    assert {chunk.document_id for chunk in ready_only} == {"ready"}
    assert all(chunk.is_retrievable for chunk in ready_only)
    assert {chunk.document_id for chunk in explicit} == {"pending"}


def test_update_embeddings_ignores_parents_and_unknown_ids():
    async def run():
        store = ChunkStore()
        chunks = await populate(store)
        parent = chunks[0]
        updated = await store.update_embeddings("doc1", {parent.id: [1.0], "doc1:99999": [1.0]})
        return updated, await store.get_chunk("doc1", parent.id)

    updated, parent = asyncio.run(run())
    assert updated == 0
    assert parent.embedding is None


def test_save_chunks_rejects_foreign_chunks():
    async def run():
        store = ChunkStore()
        chunks = ChunkBuilder().build("other", SAMPLE_TEXT)
        await store.save_chunks("doc1", chunks)

    with pytest.raises(DataIntegrityError):
        asyncio.run(run())


def test_update_missing_document_raises_key_error():
    async def run():
        await ChunkStore().update_document("missing", status=DocumentStatus.READY)

    with pytest.raises(KeyError):
        asyncio.run(run())


def test_get_parents():
    async def run():
        store = ChunkStore()
        chunks = await populate(store)
        parent_ids = {chunk.parent_id for chunk in chunks if chunk.parent_id}
        child_id = next(chunk.id for chunk in chunks if chunk.is_retrievable)
        return parent_ids, await store.get_parents("doc1", parent_ids | {child_id})

    parent_ids, parents = asyncio.run(run())
    assert set(parents) == parent_ids, "Only parent chunks are returned"


def test_update_embeddings_after_delete_writes_nothing(tmp_path):
    async def run():
        store = ChunkStore(str(tmp_path))
        chunks = await populate(store)
        child = next(chunk for chunk in chunks if chunk.is_retrievable)
        await store.delete_document("doc1")
        return await store.update_embeddings("doc1", {child.id: [0.5, 0.5]})

    updated = asyncio.run(run())
    assert updated == 0
    assert not (tmp_path / "chunks" / "doc1.json").exists(), "Deleted collections are not recreated"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("EMBEDDING_API_KEY", "env-key")
    monkeypatch.setenv("CACHE_TTL", "60")
    monkeypatch.setenv("RELEVANCE_RATIO", "0.3")

    settings = RetrievalSettings.from_env(data_dir="/tmp/kb", api_key=None)

    assert settings.api_key == "env-key", "None overrides do not replace environment values"
    assert settings.cache_ttl == 60.0
    assert settings.relevance_ratio == 0.3
    assert settings.data_dir == "/tmp/kb"


def test_settings_intent_lookups():
    settings = RetrievalSettings()
    assert settings.params_for(Intent.TROUBLESHOOT).limit == 25
    assert settings.params_for(Intent.EXPLANATION).limit == 15
    assert settings.fusion_profile_for(Intent.EXPLANATION).k == 80.0
    assert settings.fusion_profile_for(Intent.GENERAL).k == 60.0


def test_document_locks_are_released():
    async def run():
        store = ChunkStore()
        await populate(store)
        await store.delete_document("doc1")
        return store

    store = asyncio.run(run())
    gc.collect()
    assert len(store._locks) == 0, "Idle per-document locks are not kept"

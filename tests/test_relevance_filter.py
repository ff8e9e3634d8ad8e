#!/usr/bin/env python3
"""
Tests for the document relevance filter.
"""

import os
import sys

import pytest

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.models import Chunk, ChunkType, SearchHit
from retrieval_services.relevance_filter import DocumentRelevanceFilter
from retrieval_services.settings import RetrievalSettings


def make_hit(chunk_id, document_id, score, keyword_score=None):
    chunk = Chunk(id=chunk_id, document_id=document_id, chunk_index=0, chunk_type=ChunkType.CHILD,
                  content=chunk_id, parent_id=f"{document_id}:parent")
    return SearchHit(chunk=chunk, score=score, fused_score=score, keyword_score=keyword_score)


@pytest.fixture
def relevance_filter():
    return DocumentRelevanceFilter(RetrievalSettings(relevance_ratio=0.25))


def test_threshold_boundary_is_inclusive(relevance_filter):
    outcome = relevance_filter.apply([make_hit("a:1", "a", 0.8), make_hit("b:1", "b", 0.2)])

    assert outcome.threshold == pytest.approx(0.2)
    assert outcome.passed == ["a", "b"]
    assert [hit.chunk_id for hit in outcome.hits] == ["a:1", "b:1"]


def test_below_threshold_is_dropped(relevance_filter):
    outcome = relevance_filter.apply([make_hit("a:1", "a", 0.8), make_hit("b:1", "b", 0.19999)])

    assert outcome.passed == ["a"]
    assert outcome.rejected == ["b"]
    assert outcome.documents["b"].reason == "below threshold"


def test_strong_keyword_rescues_document(relevance_filter):
    outcome = relevance_filter.apply([make_hit("a:1", "a", 0.8), make_hit("b:1", "b", 0.01, keyword_score=3.0)])
    assert outcome.passed == ["a", "b"]
    assert outcome.documents["b"].reason == "strong keyword match"


def test_title_match_rescues_sparse_document(relevance_filter):
    hits = [make_hit("a:1", "a", 0.8), make_hit("b:1", "b", 0.05)]
    query = "bgp neighbor configuration"

    without_titles = relevance_filter.apply(hits, query=query)
    assert without_titles.passed == ["a"]

    titles = {"a": "OSPF guide", "b": "BGP Neighbor Configuration Guide"}
    outcome = relevance_filter.apply(hits, query=query, titles=titles)

    assert outcome.passed == ["a", "b"]
    assert outcome.documents["a"].title_score == 0.0
    assert outcome.documents["b"].title_score == 3.0, "One point per query token in the title"
    assert outcome.documents["b"].reason == "strong keyword match"


def test_title_score_adds_to_chunk_keyword_score(relevance_filter):
    hits = [make_hit("a:1", "a", 0.8), make_hit("b:1", "b", 0.05, keyword_score=2.0)]
    outcome = relevance_filter.apply(hits, query="bgp timers", titles={"b": "bgp reference"})

    assert outcome.documents["b"].keyword_score == 3.0
    assert "b" in outcome.passed


def test_keyword_presence_needs_half_threshold(relevance_filter):
    hits = [
        make_hit("a:1", "a", 0.8),
        make_hit("b:1", "b", 0.12, keyword_score=1.0),
        make_hit("c:1", "c", 0.05, keyword_score=1.0),
    ]
    outcome = relevance_filter.apply(hits)

    assert outcome.documents["b"].reason == "keyword presence"
    assert outcome.rejected == ["c"]


def test_mean_score_is_averaged_per_document(relevance_filter):
    hits = [make_hit("a:1", "a", 0.9), make_hit("b:1", "b", 0.3), make_hit("a:2", "a", 0.1)]
    documents = relevance_filter.score_documents(hits)

    assert documents["a"].mean_score == pytest.approx(0.5)
    assert documents["a"].chunk_count == 2
    assert list(documents) == ["a", "b"], "Documents keep the order of their first hit"


def test_surviving_hits_keep_original_order(relevance_filter):
    hits = [make_hit("a:1", "a", 0.9), make_hit("c:1", "c", 0.01), make_hit("b:1", "b", 0.5),
            make_hit("a:2", "a", 0.4)]
    outcome = relevance_filter.apply(hits)
    assert [hit.chunk_id for hit in outcome.hits] == ["a:1", "b:1", "a:2"]


def test_empty_input():
    outcome = DocumentRelevanceFilter().apply([])
    assert outcome.is_empty
    assert outcome.documents == {}

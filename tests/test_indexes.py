#!/usr/bin/env python3
"""
Tests for the lexical and vector indexes.
"""

import os
import sys

import pytest

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.lexical_index import LexicalIndex, tokenize
from retrieval_services.models import Chunk, ChunkType
from retrieval_services.vector_index import VectorIndex, cosine_similarity


def make_chunk(chunk_id, content, chunk_type=ChunkType.CHILD, embedding=None, document_id="doc"):
    return Chunk(
        id=chunk_id,
        document_id=document_id,
        chunk_index=0,
        chunk_type=chunk_type,
        content=content,
        parent_id=None if chunk_type == ChunkType.PARENT else f"{document_id}:parent",
        embedding=embedding,
    )


# ---------------------------------------------------------------------------
# Lexical index
# ---------------------------------------------------------------------------


def test_tokenize_mixed_text():
    tokens = tokenize("Configure BGP 邻居 on swp1, a b BGP")
    assert tokens == ["configure", "bgp", "邻居", "on", "swp1"], "Single ASCII letters and duplicates dropped"


def test_exact_phrase_scores_above_token_overlap():
    index = LexicalIndex()
    exact = index.score("BGP neighbor configuration", "Example: BGP neighbor configuration for swp51")
    partial = index.score("BGP neighbor configuration", "The neighbor table of BGP")

    assert exact == 13.0, "Exact phrase bonus plus one point per token"
    assert partial == 2.0


def test_exact_flag_requires_the_full_query():
    index = LexicalIndex()
    query = "one two three four five six seven eight nine ten"
    scattered = " ".join(reversed(query.split()))

    assert index.match(query, f"x {query} y") == (20.0, True)
    assert index.match(query, scattered) == (10.0, False), "Ten token hits are not a phrase match"

    results = index.search(query, [make_chunk("doc:00001", scattered)])
    assert results[0].score == 10.0 and not results[0].exact


def test_lexical_search_skips_parents_and_zero_scores():
    chunks = [
        make_chunk("doc:00000", "BGP neighbor overview", chunk_type=ChunkType.PARENT),
        make_chunk("doc:00001", "BGP neighbor swp51"),
        make_chunk("doc:00002", "OSPF area settings"),
        make_chunk("doc:00003", "bgp timers"),
    ]
    results = LexicalIndex().search("BGP neighbor", chunks)

    assert [match.chunk.id for match in results] == ["doc:00001", "doc:00003"]
    assert results[0][1] > results[1][1]


def test_lexical_search_breaks_ties_by_id():
    chunks = [make_chunk("doc:00002", "bgp"), make_chunk("doc:00001", "bgp")]
    results = LexicalIndex().search("bgp", chunks)
    assert [match.chunk.id for match in results] == ["doc:00001", "doc:00002"]


def test_cjk_query_matches_substring():
    chunks = [make_chunk("doc:00001", "配置BGP邻居的步骤")]
    results = LexicalIndex().search("BGP邻居", chunks)
    assert results and results[0][1] >= 10.0


# ---------------------------------------------------------------------------
# Vector index
# ---------------------------------------------------------------------------


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


def test_vector_search_ranks_by_similarity():
    chunks = [
        make_chunk("doc:00001", "a", embedding=[1.0, 0.0]),
        make_chunk("doc:00002", "b", embedding=[0.7, 0.7]),
        make_chunk("doc:00003", "c", embedding=[0.0, 1.0]),
    ]
    results = VectorIndex().search([1.0, 0.0], chunks, min_score=0.3)

    assert [chunk.id for chunk, _ in results] == ["doc:00001", "doc:00002"], "Orthogonal chunk is below the floor"
    assert results[0][1] == pytest.approx(1.0, abs=1e-6)


def test_vector_search_skips_unusable_chunks():
    chunks = [
        make_chunk("doc:00000", "parent", chunk_type=ChunkType.PARENT, embedding=[1.0, 0.0]),
        make_chunk("doc:00001", "no embedding"),
        make_chunk("doc:00002", "wrong dimension", embedding=[1.0, 0.0, 0.0]),
        make_chunk("doc:00003", "usable", embedding=[1.0, 0.1]),
    ]
    results = VectorIndex().search([1.0, 0.0], chunks)
    assert [chunk.id for chunk, _ in results] == ["doc:00003"]


def test_vector_search_with_zero_query_returns_nothing():
    chunks = [make_chunk("doc:00001", "a", embedding=[1.0, 0.0])]
    assert VectorIndex().search([0.0, 0.0], chunks) == []


def test_vector_search_limit():
    chunks = [make_chunk(f"doc:{i:05d}", "x", embedding=[1.0, float(i)]) for i in range(10)]
    assert len(VectorIndex().search([1.0, 0.0], chunks, limit=3)) == 3

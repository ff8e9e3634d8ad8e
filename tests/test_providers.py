#!/usr/bin/env python3
"""
Tests for the embedding and rerank HTTP clients and error classification.

Requests are served by httpx.MockTransport, so nothing leaves the process.
"""

import asyncio
import json
import os
import sys

import httpx
import pytest

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.errors import (
    ConfigurationError,
    RetrievalError,
    TransientProviderError,
    classify_provider_error,
)
from retrieval_services.providers import EmbeddingClient, RerankClient, prepare_text
from retrieval_services.settings import RetrievalSettings


@pytest.fixture
def settings():
    return RetrievalSettings(api_key="test-key", api_base="https://provider.test/v1/")


def call(client, method, *args):
    async def run():
        try:
            return await getattr(client, method)(*args)
        finally:
            await client.aclose()

    return asyncio.run(run())


def test_prepare_text_flattens_and_truncates():
    assert prepare_text("line one\n\nline   two", 100) == "line one line two"
    assert prepare_text("abcdef", 3) == "abc"


def test_embeddings_are_returned_in_input_order(settings):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]})

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    vectors = call(client, "embed", ["first\ntext", "second"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert seen["url"] == "https://provider.test/v1/embeddings"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["input"] == ["first text", "second"]
    assert seen["body"]["model"] == "BAAI/bge-m3"


def test_missing_vectors_are_transient(settings):
    def handler(request):
        return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError):
        call(client, "embed", ["a text", "another text"])


@pytest.mark.parametrize("status,error_type", [
    (401, ConfigurationError),
    (403, ConfigurationError),
    (429, TransientProviderError),
    (503, TransientProviderError),
    (400, RetrievalError),
])
def test_http_errors_are_classified(settings, status, error_type):
    def handler(request):
        return httpx.Response(status, json={"error": "nope"})

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(error_type) as excinfo:
        call(client, "embed", ["text"])
    if status == 400:
        assert not isinstance(excinfo.value, TransientProviderError)


def test_network_error_is_transient(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError):
        call(client, "embed", ["text"])


def test_malformed_payload_is_transient(settings):
    def handler(request):
        return httpx.Response(200, content=b"not json")

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError):
        call(client, "embed", ["text"])


def test_missing_api_key_is_configuration_error():
    def handler(request):
        raise AssertionError("no request should be sent without a key")

    client = EmbeddingClient(RetrievalSettings(api_key=None), transport=httpx.MockTransport(handler))
    with pytest.raises(ConfigurationError):
        call(client, "embed", ["text"])


def test_rerank_scores_scatter_by_index(settings):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [
            {"index": 2, "relevance_score": 0.9},
            {"index": 0, "relevance_score": 0.1},
        ]})

    client = RerankClient(settings, transport=httpx.MockTransport(handler))
    scores = call(client, "rerank", "bgp", ["a", "b", "c"])

    assert scores == [0.1, None, 0.9]
    assert seen["body"]["top_n"] == 3
    assert seen["body"]["return_documents"] is False


def test_empty_inputs_skip_the_request(settings):
    def handler(request):
        raise AssertionError("no request expected")

    transport = httpx.MockTransport(handler)
    assert call(EmbeddingClient(settings, transport=transport), "embed", []) == []
    assert call(RerankClient(settings, transport=transport), "rerank", "q", []) == []


def test_classify_passes_retrieval_errors_through():
    error = ConfigurationError("already classified")
    assert classify_provider_error(error) is error


@pytest.mark.parametrize("method,args", [
    ("embed", (["text"],)),
    ("rerank", ("bgp", ["a", "b"])),
])
def test_non_object_payload_is_transient(settings, method, args):
    def handler(request):
        return httpx.Response(200, json=[])

    client_class = EmbeddingClient if method == "embed" else RerankClient
    client = client_class(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError):
        call(client, method, *args)


def test_malformed_items_are_transient(settings):
    def handler(request):
        return httpx.Response(200, json={"data": ["not an object"]})

    client = EmbeddingClient(settings, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError):
        call(client, "embed", ["text"])

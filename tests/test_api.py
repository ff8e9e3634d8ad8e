#!/usr/bin/env python3
"""
Tests for the FastAPI app and the click CLI.
"""

import os
import sys

import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

# Add the parent directory to the path so we can import the modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from retrieval_services.api import create_fastapi_app
from retrieval_services.cli import cli
from retrieval_services.retrieval_service import RetrievalService

GUIDE_TEXT = """# BGP Guide

## BGP neighbor configuration

BGP neighbor configuration uses nv set vrf default router bgp neighbor.

```bash
nv set vrf default router bgp neighbor swp51 remote-as external
```
"""


@pytest.fixture
def client(fast_settings):
    app = create_fastapi_app(RetrievalService(fast_settings))
    with TestClient(app) as test_client:
        yield test_client


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_ingest_and_search(client):
    response = client.post("/documents", json={"title": "BGP", "text": GUIDE_TEXT, "document_id": "bgp"})
    assert response.status_code == 200
    assert response.json()["status"] == "ready"

    response = client.post("/search", json={"query": "BGP neighbor configuration"})
    assert response.status_code == 200
    body = response.json()
    assert body["intent"]["intent"] == "configuration"
    assert body["hits"], "Ingested document should be found"
    assert body["hits"][0]["chunk"]["document_id"] == "bgp"
    assert "keyword" in body["hits"][0]["sources"]

    stats = client.get("/documents/bgp/chunks/stats").json()
    assert stats["parent_count"] >= 1


def test_document_endpoints(client):
    client.post("/documents", json={"title": "BGP", "text": GUIDE_TEXT, "document_id": "bgp"})

    assert [doc["id"] for doc in client.get("/documents").json()] == ["bgp"]
    assert client.get("/documents/bgp").json()["title"] == "BGP"
    assert client.get("/documents/bgp/task").json()["document_id"] == "bgp"
    assert client.delete("/documents/bgp").status_code == 200
    assert client.get("/documents/bgp").status_code == 404


def test_missing_resources_return_404(client):
    assert client.get("/documents/nope").status_code == 404
    assert client.delete("/documents/nope").status_code == 404
    assert client.post("/documents/nope/embeddings").status_code == 404
    assert client.get("/tasks/task_missing").status_code == 404


def test_invalid_requests(client):
    assert client.post("/documents", json={"title": "Empty", "text": "   "}).status_code == 400
    assert client.post("/search", json={"query": ""}).status_code == 422
    assert client.post("/search", json={"query": "bgp", "limit": 0}).status_code == 422


def test_empty_search_message(client):
    body = client.post("/search", json={"query": "nothing indexed"}).json()
    assert body["hits"] == []
    assert body["message"] == "No relevant documents found"


def test_cache_stats(client):
    client.post("/search", json={"query": "bgp"})
    client.post("/search", json={"query": "bgp"})
    stats = client.get("/cache/stats").json()
    assert stats["hits"] == 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def test_cli_ingest_search_and_tasks(tmp_path):
    source = tmp_path / "bgp.md"
    source.write_text(GUIDE_TEXT, encoding="utf-8")
    data_dir = str(tmp_path / "kb")
    runner = CliRunner()

    result = runner.invoke(cli, ["--data-dir", data_dir, "ingest", str(source), "--document-id", "bgp"])
    assert result.exit_code == 0, result.output
    assert "bgp" in result.output

    result = runner.invoke(cli, ["--data-dir", data_dir, "search", "BGP neighbor configuration", "--json-output"])
    assert result.exit_code == 0, result.output
    assert '"document_id": "bgp"' in result.output
    assert '"embedding"' not in result.output

    result = runner.invoke(cli, ["--data-dir", data_dir, "tasks", "bgp"])
    assert result.exit_code == 0, result.output
    assert "ready" in result.output

    result = runner.invoke(cli, ["--data-dir", data_dir, "tasks", "missing"])
    assert result.exit_code != 0


def test_cli_recover_without_provider(tmp_path):
    source = tmp_path / "bgp.md"
    source.write_text(GUIDE_TEXT, encoding="utf-8")
    data_dir = str(tmp_path / "kb")
    runner = CliRunner()

    result = runner.invoke(cli, ["--data-dir", data_dir, "ingest", str(source), "--document-id", "bgp", "--no-wait"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(cli, ["--data-dir", data_dir, "recover"])
    assert result.exit_code == 0, result.output
    assert "bgp" in result.output, "Documents without embeddings get a recovery task"
    assert "failed" in result.output

"""HTTP clients for the external embedding and rerank providers.

Both clients speak the OpenAI-compatible ``/embeddings`` and ``/rerank``
endpoints served by SiliconFlow and similar hosts. They do not retry on their
own: the embedding task queue retries whole batches, and the query path
degrades instead of waiting.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from retrieval_services.errors import ConfigurationError, TransientProviderError, classify_provider_error
from retrieval_services.service_interfaces import EmbeddingBackend, RerankBackend
from retrieval_services.settings import RetrievalSettings

# Configure logging
logger = logging.getLogger(__name__)


def prepare_text(text: str, max_chars: int) -> str:
    """Flatten newlines and truncate to the provider's safe input length."""
    return " ".join(text.split())[:max_chars]


class _ProviderClient:
    """Shared httpx plumbing for provider clients."""

    provider_name = "provider"

    def __init__(self, settings: RetrievalSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.api_key = settings.api_key
        self.client = httpx.AsyncClient(
            base_url=settings.api_base.rstrip("/"),
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError(f"No API key configured for {self.provider_name}")
        try:
            response = await self.client.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e, self.provider_name) from e

        if not isinstance(data, dict):
            raise TransientProviderError(
                f"{self.provider_name} returned a malformed payload: expected an object, got {type(data).__name__}"
            )
        return data

    async def aclose(self) -> None:
        await self.client.aclose()


class EmbeddingClient(_ProviderClient, EmbeddingBackend):
    """Embedding provider client."""

    provider_name = "embedding provider"

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts.

        Args:
            texts: Plain texts; each is flattened and truncated before sending

        Returns:
            One vector per input, in input order

        Raises:
            ConfigurationError: if no API key is configured or the key is rejected
            TransientProviderError: on network errors, 429/5xx or a malformed response
        """
        if not texts:
            return []

        payload = {
            "model": self.settings.embedding_model,
            "input": [prepare_text(text, self.settings.embed_max_chars) for text in texts],
            "encoding_format": "float",
        }
        data = await self._post("/embeddings", payload)

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            vectors = [[float(v) for v in item["embedding"]] for item in items]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise classify_provider_error(e, self.provider_name) from e

        if len(vectors) != len(texts):
            raise TransientProviderError(
                f"{self.provider_name} returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        logger.debug(f"Embedded {len(texts)} texts with {self.settings.embedding_model}")
        return vectors


class RerankClient(_ProviderClient, RerankBackend):
    """Rerank provider client."""

    provider_name = "rerank provider"

    async def rerank(self, query: str, documents: List[str]) -> List[Optional[float]]:
        """Score candidates against a query.

        Returns:
            One score per candidate in input order; ``None`` where the provider
            returned no score
        """
        if not documents:
            return []

        payload = {
            "model": self.settings.rerank_model,
            "query": query,
            "documents": [prepare_text(doc, self.settings.embed_max_chars) for doc in documents],
            "top_n": len(documents),
            "return_documents": False,
        }
        data = await self._post("/rerank", payload)

        scores: List[Optional[float]] = [None] * len(documents)
        try:
            for item in data.get("results", []):
                index = int(item["index"])
                if 0 <= index < len(documents):
                    scores[index] = float(item["relevance_score"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise classify_provider_error(e, self.provider_name) from e
        return scores

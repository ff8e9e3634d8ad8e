"""Service interfaces for the retrieval engine.

This module defines the base interfaces that the stateful services and the
external scoring collaborators must implement, so the query pipeline and the
embedding worker can be wired against fakes in tests and against HTTP
providers in production.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ServiceInterface(ABC):
    """Base interface that all long-lived retrieval services implement."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Check if the service is healthy and return status information."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Gracefully shutdown the service."""
        pass


class EmbeddingBackend(ABC):
    """Interface for the external embedding capability."""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, order-preserving."""
        pass

    async def aclose(self) -> None:
        """Release any network resources held by the backend."""
        return None


class RerankBackend(ABC):
    """Interface for the external passage reranking capability."""

    @abstractmethod
    async def rerank(self, query: str, documents: List[str]) -> List[Optional[float]]:
        """Return one relevance score per candidate, order-preserving.

        Candidates the provider did not score are returned as ``None``.
        """
        pass

    async def aclose(self) -> None:
        """Release any network resources held by the backend."""
        return None

"""Error taxonomy shared by the retrieval services."""
from typing import Optional

import httpx


class RetrievalError(Exception):
    """Base class for retrieval engine errors."""
    pass


class ConfigurationError(RetrievalError):
    """Raised when provider credentials or endpoints are missing. Never retried."""
    pass


class TransientProviderError(RetrievalError):
    """Raised for network failures and 429/5xx responses from a provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DataIntegrityError(RetrievalError):
    """Raised when a chunk is structurally invalid or cannot be embedded."""
    pass


class CacheMiss(KeyError):
    """Raised by the query cache when no live entry exists for a key."""
    pass


def classify_provider_error(error: Exception, provider: str = "provider") -> RetrievalError:
    """Map an httpx exception onto the retrieval error taxonomy.

    Args:
        error: Exception raised while talking to the provider
        provider: Name used in the error message

    Returns:
        The matching RetrievalError subclass instance
    """
    if isinstance(error, RetrievalError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return ConfigurationError(f"{provider} rejected the API key (HTTP {status})")
        if status == 429 or status >= 500:
            return TransientProviderError(f"{provider} returned HTTP {status}", status_code=status)
        return RetrievalError(f"{provider} request failed with HTTP {status}: {error.response.text[:200]}")

    if isinstance(error, httpx.TransportError):
        return TransientProviderError(f"{provider} unreachable: {error.__class__.__name__}: {error}")

    if isinstance(error, (AttributeError, ValueError, KeyError, TypeError)):
        return TransientProviderError(f"{provider} returned a malformed payload: {error}")

    return RetrievalError(f"{provider} error: {error}")

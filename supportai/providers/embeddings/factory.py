from __future__ import annotations

from supportai.core.config import get_settings
from supportai.core.errors import ProviderConfigError
from supportai.providers.embeddings.base import EmbeddingClient
from supportai.providers.embeddings.hashing import HashEmbeddingClient
from supportai.providers.embeddings.openai_compat import OpenAICompatibleEmbeddingClient


_client: EmbeddingClient | None = None


def get_embedding_client() -> EmbeddingClient:
    # Lazily built process-wide client; the provider is fixed per process.
    global _client
    if _client is not None:
        return _client
    settings = get_settings()
    provider = (settings.embedding_provider or "hash").lower()
    if provider == "hash":
        _client = HashEmbeddingClient()
    elif provider == "openai":
        _client = OpenAICompatibleEmbeddingClient()
    else:
        raise ProviderConfigError(f"Unknown embedding provider: {provider}")
    return _client


def reset_embedding_client() -> None:
    global _client
    _client = None

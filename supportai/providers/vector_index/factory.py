from __future__ import annotations

from supportai.core.config import get_settings
from supportai.core.errors import ProviderConfigError
from supportai.providers.vector_index.base import VectorIndex
from supportai.providers.vector_index.memory import InMemoryVectorIndex
from supportai.providers.vector_index.pgvector import PgVectorIndex


_index: VectorIndex | None = None


def get_vector_index() -> VectorIndex:
    global _index
    if _index is not None:
        return _index
    provider = (get_settings().vector_index_provider or "pgvector").lower()
    if provider == "pgvector":
        _index = PgVectorIndex()
    elif provider == "memory":
        _index = InMemoryVectorIndex()
    else:
        raise ProviderConfigError(f"Unknown vector index provider: {provider}")
    return _index


def reset_vector_index() -> None:
    global _index
    _index = None

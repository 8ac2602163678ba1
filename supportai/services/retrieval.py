from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from supportai.core.errors import EmbeddingError, VectorIndexError
from supportai.providers.embeddings.base import EmbeddingClient
from supportai.providers.vector_index.base import VectorIndex, VectorMatch


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalResult:
    matches: list[VectorMatch] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        # Mean similarity of the returned matches; zero when nothing came back.
        if not self.matches:
            return 0.0
        return sum(match.score for match in self.matches) / len(self.matches)

    @property
    def citations(self) -> list[str]:
        seen: list[str] = []
        for match in self.matches:
            source_id = match.source_id
            if source_id and source_id not in seen:
                seen.append(source_id)
        return seen

    def as_context(self) -> list[dict[str, Any]]:
        return [
            {"id": match.id, "text": match.text, "score": match.score, "source_id": match.source_id}
            for match in self.matches
        ]


async def retrieve(
    tenant_id: str,
    query: str,
    *,
    top_k: int,
    embedder: EmbeddingClient,
    index: VectorIndex,
) -> RetrievalResult:
    """Embed the query and search the tenant's namespace.

    Provider failures degrade to an empty result so the caller can hand over
    on low confidence instead of failing the turn.
    """
    try:
        vectors = await embedder.embed([query])
        if not vectors:
            return RetrievalResult()
        matches = await index.query(tenant_id, vectors[0], top_k)
    except (EmbeddingError, VectorIndexError):
        logger.warning("retrieval_failed tenant_id=%s", tenant_id, exc_info=True)
        return RetrievalResult()
    return RetrievalResult(matches=list(matches))

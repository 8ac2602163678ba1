from __future__ import annotations

from typing import Protocol, Sequence

from supportai.core.config import EMBED_DIM
from supportai.core.errors import EmbeddingError


class EmbeddingClient(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


async def embed_in_batches(
    client: EmbeddingClient, texts: Sequence[str], *, batch_size: int = 20
) -> list[list[float]]:
    # One provider call per batch; any failed batch aborts the whole run.
    if batch_size <= 0:
        raise EmbeddingError("batch_size must be positive")
    vectors: list[list[float]] = []
    for offset in range(0, len(texts), batch_size):
        batch = list(texts[offset : offset + batch_size])
        try:
            embedded = await client.embed(batch)
        except EmbeddingError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalize provider failures for the ingestion job
            raise EmbeddingError(f"embedding batch at offset {offset} failed") from exc
        if len(embedded) != len(batch):
            raise EmbeddingError("embedding provider returned a mismatched vector count")
        for vector in embedded:
            if len(vector) != EMBED_DIM:
                raise EmbeddingError("embedding dimension mismatch")
        vectors.extend(embedded)
    return vectors

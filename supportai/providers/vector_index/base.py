from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence


@dataclass(frozen=True)
class VectorRecordIn:
    id: str
    vector: list[float]
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorMatch:
    id: str
    text: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_id(self) -> str | None:
        value = self.metadata.get("source_id")
        return str(value) if value is not None else None


class VectorIndex(Protocol):
    """Per-tenant namespaced vector store. The namespace is always the tenant id."""

    async def upsert(self, namespace: str, records: Sequence[VectorRecordIn]) -> int:
        ...

    async def query(self, namespace: str, vector: list[float], top_k: int) -> list[VectorMatch]:
        ...

    async def delete_source(self, namespace: str, source_id: str) -> int:
        ...

    async def delete_namespace(self, namespace: str) -> int:
        ...


def vector_id(source_id: str, chunk_index: int) -> str:
    # Stable across versions; re-ingestion deletes the old vectors before upserting.
    return f"{source_id}#chunk-{chunk_index}"

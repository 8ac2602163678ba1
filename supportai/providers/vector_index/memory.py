from __future__ import annotations

import asyncio
import math
from typing import Sequence

from supportai.core.errors import VectorIndexError
from supportai.providers.vector_index.base import VectorMatch, VectorRecordIn


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Process-local index for development and tests."""

    def __init__(self) -> None:
        self._namespaces: dict[str, dict[str, VectorRecordIn]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, namespace: str, records: Sequence[VectorRecordIn]) -> int:
        if not namespace:
            raise VectorIndexError("namespace is required")
        async with self._lock:
            bucket = self._namespaces.setdefault(namespace, {})
            for record in records:
                bucket[record.id] = record
        return len(records)

    async def query(self, namespace: str, vector: list[float], top_k: int) -> list[VectorMatch]:
        if not namespace:
            raise VectorIndexError("namespace is required")
        bucket = self._namespaces.get(namespace, {})
        scored = [
            VectorMatch(
                id=record.id,
                text=record.text,
                score=max(0.0, min(1.0, _cosine(vector, record.vector))),
                metadata=dict(record.metadata),
            )
            for record in bucket.values()
        ]
        scored.sort(key=lambda match: (-match.score, match.id))
        return scored[: max(0, top_k)]

    async def delete_source(self, namespace: str, source_id: str) -> int:
        async with self._lock:
            bucket = self._namespaces.get(namespace, {})
            doomed = [key for key, record in bucket.items() if record.metadata.get("source_id") == source_id]
            for key in doomed:
                bucket.pop(key, None)
        return len(doomed)

    async def delete_namespace(self, namespace: str) -> int:
        async with self._lock:
            bucket = self._namespaces.pop(namespace, {})
        return len(bucket)

    def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))

from __future__ import annotations

import hashlib
import math
import re
from typing import Sequence

from supportai.core.config import EMBED_DIM


_WORD_RE = re.compile(r"[A-Za-z0-9_]+")


def _bucket(word: str) -> tuple[int, float]:
    digest = hashlib.sha256(word.encode("utf-8")).digest()
    index = int.from_bytes(digest[:4], "big") % EMBED_DIM
    weight = 0.2 + (int.from_bytes(digest[4:8], "big") % 1000) / 1000.0
    return index, weight if digest[8] % 2 == 0 else -weight


def hash_embedding(text: str) -> list[float]:
    """Feature-hashed bag of words, unit length; identical text maps to identical vectors."""
    vector = [0.0] * EMBED_DIM
    for word in _WORD_RE.findall(text.lower()):
        index, weight = _bucket(word)
        vector[index] += weight
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


class HashEmbeddingClient:
    """Deterministic local embeddings for development and tests."""

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        return [hash_embedding(text) for text in texts]

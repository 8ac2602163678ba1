from __future__ import annotations

import logging
from typing import Sequence

import httpx

from supportai.core.config import EMBED_DIM, get_settings
from supportai.core.errors import EmbeddingError, ProviderConfigError


logger = logging.getLogger(__name__)


class OpenAICompatibleEmbeddingClient:
    """Calls an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key or settings.embedding_api_key
        if not self._api_key:
            raise ProviderConfigError("EMBEDDING_API_KEY is required for the openai embedding provider")
        self._base_url = (base_url or settings.embedding_base_url).rstrip("/")
        self._model = model or settings.embedding_model
        self._timeout_s = timeout_s or settings.embedding_timeout_s
        self._transport = transport

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        payload = {"model": self._model, "input": list(texts), "dimensions": EMBED_DIM}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            try:
                response = await client.post(f"{self._base_url}/embeddings", json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.warning("embedding_request_failed status=%s", exc.response.status_code)
                raise EmbeddingError(f"embedding request failed with HTTP {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                raise EmbeddingError("embedding request failed") from exc
        try:
            data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
            return [[float(value) for value in item["embedding"]] for item in data]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError("malformed embedding response") from exc

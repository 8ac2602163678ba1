from __future__ import annotations

import json
import logging
import threading
import time
from typing import Iterable

import httpx

from supportai.core.config import get_settings
from supportai.core.errors import GenerationCancelled, GenerationError, ProviderConfigError


logger = logging.getLogger(__name__)


class OpenAICompatibleProvider:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        request_id: str | None = None,
        cancel_event: threading.Event | None = None,
        model: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = get_settings()
        self._request_id = request_id
        # Checked between chunks so a disconnect closes the upstream stream.
        self._cancel_event = cancel_event
        self._model = model or self._settings.llm_model
        self._transport = transport

    def _validate_config(self) -> str:
        api_key = self._settings.llm_api_key
        if not api_key:
            raise ProviderConfigError("LLM_API_KEY is required for the openai provider")
        return api_key

    def stream(self, messages: list[dict]) -> Iterable[str]:
        api_key = self._validate_config()
        payload = {
            "model": self._model,
            "messages": messages,
            "stream": True,
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
        }
        url = f"{self._settings.llm_base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {api_key}"}
        deadline = time.monotonic() + max(1.0, float(self._settings.llm_timeout_s))
        logger.info("llm_stream_start request_id=%s model=%s", self._request_id, self._model)
        try:
            with httpx.Client(timeout=self._settings.llm_timeout_s, transport=self._transport) as client:
                with client.stream("POST", url, json=payload, headers=headers) as response:
                    response.raise_for_status()
                    for line in response.iter_lines():
                        if self._cancel_event is not None and self._cancel_event.is_set():
                            raise GenerationCancelled("generation cancelled by caller")
                        if time.monotonic() > deadline:
                            raise GenerationError("generation stream timed out")
                        delta = _parse_sse_line(line)
                        if delta is None:
                            continue
                        if delta == "":
                            break
                        yield delta
        except (GenerationCancelled, GenerationError):
            raise
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "llm_stream_http_error request_id=%s status=%s", self._request_id, exc.response.status_code
            )
            raise GenerationError(f"generation request failed with HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("llm_stream_error request_id=%s", self._request_id)
            raise GenerationError("generation request failed") from exc


def _parse_sse_line(line: str) -> str | None:
    # None: nothing to emit; "": end of stream; otherwise the content delta.
    if not line or not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return ""
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        return None
    choices = chunk.get("choices") or []
    if not choices:
        return None
    content = (choices[0].get("delta") or {}).get("content")
    return content or None

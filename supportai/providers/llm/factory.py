from __future__ import annotations

import threading

from supportai.core.config import get_settings
from supportai.core.errors import ProviderConfigError
from supportai.providers.llm.base import LLMProvider
from supportai.providers.llm.fake import FakeLLMProvider
from supportai.providers.llm.openai_compat import OpenAICompatibleProvider


def get_llm_provider(
    request_id: str,
    cancel_event: threading.Event,
    *,
    model: str | None = None,
) -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "fake").lower()

    if provider == "fake":
        return FakeLLMProvider(cancel_event=cancel_event)
    if provider == "openai":
        return OpenAICompatibleProvider(request_id=request_id, cancel_event=cancel_event, model=model)
    raise ProviderConfigError(f"Unknown LLM provider: {provider}")

from __future__ import annotations

import threading
from typing import Iterable

from supportai.core.errors import GenerationCancelled, GenerationError


class FakeLLMProvider:
    def __init__(
        self,
        response: str = "This is a fake response.",
        *,
        fail: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        # Deterministic output keeps tests free of external calls.
        self._response = response
        self._fail = fail
        self._cancel_event = cancel_event
        self.calls: list[list[dict]] = []

    def stream(self, messages: list[dict]) -> Iterable[str]:
        self.calls.append(messages)
        if self._fail:
            raise GenerationError("fake provider failure")
        for token in self._response.split():
            if self._cancel_event is not None and self._cancel_event.is_set():
                raise GenerationCancelled("generation cancelled")
            yield f"{token} "

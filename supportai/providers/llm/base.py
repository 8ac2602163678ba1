from __future__ import annotations

from typing import Iterable, Protocol


class LLMProvider(Protocol):
    # Blocking token stream; callers run it in a worker thread.
    def stream(self, messages: list[dict]) -> Iterable[str]:
        ...

from __future__ import annotations

from dataclasses import dataclass

from supportai.core.errors import ChunkingError


DEFAULT_WINDOW_CHARS = 1000
DEFAULT_OVERLAP_CHARS = 200


@dataclass(frozen=True)
class TextChunk:
    index: int
    start: int
    end: int
    text: str


def validate_window(window: int, overlap: int) -> None:
    if window <= 0:
        raise ChunkingError("window must be positive")
    if overlap < 0 or overlap >= window:
        raise ChunkingError("overlap must be >= 0 and smaller than the window")


def window_bounds(length: int, window: int, overlap: int) -> list[tuple[int, int]]:
    # The cursor advances by (window - overlap) until it reaches the end; the last window may be short.
    validate_window(window, overlap)
    step = window - overlap
    bounds: list[tuple[int, int]] = []
    start = 0
    while start < length:
        end = min(length, start + window)
        bounds.append((start, end))
        if end == length:
            break
        start += step
    return bounds


def chunk_text(
    text: str,
    *,
    window: int = DEFAULT_WINDOW_CHARS,
    overlap: int = DEFAULT_OVERLAP_CHARS,
) -> list[TextChunk]:
    chunks: list[TextChunk] = []
    for start, end in window_bounds(len(text), window, overlap):
        chunks.append(TextChunk(index=len(chunks), start=start, end=end, text=text[start:end]))
    return chunks

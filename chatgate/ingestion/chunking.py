from __future__ import annotations

from typing import Iterator


# Defaults mirror Settings.index_chunk_size_chars / index_chunk_overlap_chars.
CHUNK_SIZE_CHARS = 1200
CHUNK_OVERLAP_CHARS = 150


def _window_text(text: str, offset: int, size: int, overlap: int) -> Iterator[tuple[str, int, int]]:
    # Stable sliding window for long paragraphs; offsets are relative to the whole document.
    start = 0
    length = len(text)
    while start < length:
        end = min(length, start + size)
        yield text[start:end], offset + start, offset + end
        if end == length:
            break
        start = max(start + 1, end - overlap)


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
) -> Iterator[tuple[str, int, int]]:
    """Split knowledge text into ``(chunk, start, end)`` triples.

    Paragraph boundaries are preferred; paragraphs longer than ``chunk_size``
    fall back to overlapping windows. Output order follows the document.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    chunk_overlap = max(0, min(chunk_overlap, chunk_size - 1))
    cursor = 0
    for raw in text.split("\n\n"):
        paragraph = raw.strip()
        if not paragraph:
            continue
        start = text.find(paragraph, cursor)
        cursor = start + len(paragraph)
        if len(paragraph) <= chunk_size:
            yield paragraph, start, cursor
            continue
        yield from _window_text(paragraph, start, chunk_size, chunk_overlap)

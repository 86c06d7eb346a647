"""Overlapping character windows over document text."""

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str
    char_start: int
    char_end: int


def chunk_text_overlapping(text: str, chunk_size: int = 2000, overlap: int = 400) -> List[TextChunk]:
    """Split ``text`` into windows of ``chunk_size`` characters.

    Consecutive windows share ``overlap`` characters so that values spanning
    a boundary appear whole in at least one chunk. ``char_end`` is exclusive.

    Args:
        text: Full document text
        chunk_size: Window length in characters
        overlap: Characters shared by neighbouring windows

    Returns:
        List of chunks; empty for blank text
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be non-negative and smaller than chunk_size")

    if not text or not text.strip():
        return []

    step = chunk_size - overlap
    chunks: List[TextChunk] = []
    start = 0

    while start < len(text):
        end = min(start + chunk_size, len(text))
        chunks.append(TextChunk(index=len(chunks), text=text[start:end], char_start=start, char_end=end))
        if end == len(text):
            break
        start += step

    return chunks

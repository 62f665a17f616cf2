from __future__ import annotations

from dataclasses import dataclass

from agentcore.services.errors import ValidationError


@dataclass(frozen=True)
class TextChunk:
    index: int
    content: str
    start: int
    end: int

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token); not a real tokenizer."""
    return len(text) // 4


def validate_chunk_params(size: int, overlap: int) -> None:
    errors: list[str] = []
    if size <= 0:
        errors.append("chunk_size must be positive")
    if overlap < 0:
        errors.append("chunk_overlap must not be negative")
    if overlap >= size:
        errors.append("chunk_overlap must be smaller than chunk_size")
    if errors:
        raise ValidationError("; ".join(errors), errors)


def chunk_text(content: str, size: int, overlap: int) -> list[TextChunk]:
    """
    Split content into fixed-size character windows.

    Window i covers [pos, min(pos + size, len(content))); the next window starts
    at pos + size - overlap. Splitting stops once a window reaches the end, so the
    last window is never a pure suffix of the one before it.
    """
    validate_chunk_params(size, overlap)
    length = len(content)
    step = size - overlap
    chunks: list[TextChunk] = []
    pos = 0
    while pos < length:
        end = min(pos + size, length)
        chunks.append(TextChunk(index=len(chunks), content=content[pos:end], start=pos, end=end))
        if end >= length:
            break
        pos += step
    return chunks

"""Token-bounded, overlapping text chunking for embedding and retrieval.

Tokens are approximated as ``chars_per_token`` characters. Each chunk is an
exact slice of the input: ``text[start_offset:end_offset]``. A chunk ends at
the last paragraph break inside the second half of its window, else at the
last sentence end, else at the last whitespace, else at the window edge. The
next chunk starts ``overlap`` characters before the previous end, so adjacent
chunks always share exactly the configured margin. Whitespace-only input
counts as empty and yields no chunks.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from rfpflow.config import settings

_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*\s")


@dataclass(slots=True, frozen=True)
class Chunk:
    index: int
    text: str
    token_count: int
    start_offset: int
    end_offset: int
    source_id: str = ""


class ContentChunker:
    def __init__(
        self,
        *,
        max_tokens: int | None = None,
        overlap_tokens: int | None = None,
        chars_per_token: int | None = None,
    ):
        self.max_tokens = int(max_tokens if max_tokens is not None else settings.chunk_max_tokens)
        self.overlap_tokens = int(
            overlap_tokens if overlap_tokens is not None else settings.chunk_overlap_tokens
        )
        self.chars_per_token = int(chars_per_token or settings.chars_per_token)
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if self.overlap_tokens < 0:
            raise ValueError("overlap_tokens cannot be negative")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.max_chars = self.max_tokens * self.chars_per_token
        self.overlap_chars = self.overlap_tokens * self.chars_per_token
        if self.overlap_chars * 2 >= self.max_chars:
            raise ValueError("overlap must be smaller than half the chunk size")

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def chunk(self, text: str, source_id: str = "") -> list[Chunk]:
        if not text or not text.strip():
            return []

        chunks: list[Chunk] = []
        length = len(text)
        start = 0
        while True:
            limit = start + self.max_chars
            if limit >= length:
                end = length
            else:
                end = self._find_break(text, start, limit)
            piece = text[start:end]
            chunks.append(
                Chunk(
                    index=len(chunks),
                    text=piece,
                    token_count=self.estimate_tokens(piece),
                    start_offset=start,
                    end_offset=end,
                    source_id=source_id,
                )
            )
            if end >= length:
                break
            start = end - self.overlap_chars
        return chunks

    def _find_break(self, text: str, start: int, limit: int) -> int:
        floor = start + self.max_chars // 2
        window = text[floor:limit]

        paragraph = window.rfind("\n\n")
        if paragraph != -1:
            return floor + paragraph + 2

        last_sentence = None
        for match in _SENTENCE_END_RE.finditer(window):
            last_sentence = match
        if last_sentence is not None:
            return floor + last_sentence.end()

        for offset in range(len(window) - 1, -1, -1):
            if window[offset].isspace():
                return floor + offset + 1

        return limit


_default_chunker: ContentChunker | None = None


def chunk_text(text: str, source_id: str = "") -> list[Chunk]:
    """Chunk with the configured defaults."""
    global _default_chunker
    if _default_chunker is None:
        _default_chunker = ContentChunker()
    return _default_chunker.chunk(text, source_id)

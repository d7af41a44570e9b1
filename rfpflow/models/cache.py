from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from rfpflow.models.jobs import utcnow

PLACEHOLDER_CHUNK_TEXT = "URL queued for processing"
PLACEHOLDER_CONTENT_HASH = "pending"


class LinkStatus(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ReferenceChunkEntry:
    id: str
    content_hash: str
    chunk_index: int
    chunk_text: str
    embedding: list[float] | None = None
    url: str | None = None
    document_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def source(self) -> str:
        return self.url or self.document_id or ""

    @property
    def is_placeholder(self) -> bool:
        return self.content_hash == PLACEHOLDER_CONTENT_HASH or self.chunk_text == PLACEHOLDER_CHUNK_TEXT


@dataclass(slots=True)
class ReferenceLink:
    url: str
    title: str = ""
    description: str = ""
    status: LinkStatus = LinkStatus.UNKNOWN
    status_code: int | None = None
    error: str | None = None


@dataclass(slots=True)
class ReferenceCacheEntry:
    id: str
    question: str
    question_embedding: list[float]
    references: list[ReferenceLink] = field(default_factory=list)
    validated_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def valid_references(self) -> list[ReferenceLink]:
        return [ref for ref in self.references if ref.status != LinkStatus.INVALID]


@dataclass(slots=True)
class ResponseCacheEntry:
    id: str
    original_question: str
    reference_summary: str
    combined_embedding: list[float]
    generated_response: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class SearchHit:
    chunk: ReferenceChunkEntry
    similarity: float


@dataclass(slots=True)
class CacheMatch:
    entry: Any
    similarity: float

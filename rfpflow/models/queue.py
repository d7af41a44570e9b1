from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from rfpflow.models.jobs import utcnow


class QueueItemType(StrEnum):
    URL = "url"
    DOCUMENT = "document"


class QueueItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EnqueueStatus(StrEnum):
    QUEUED = "queued"
    ALREADY_QUEUED = "already_queued"
    ALREADY_CACHED = "already_cached"


@dataclass(slots=True)
class ReferenceDocument:
    id: str
    filename: str
    path: str
    file_type: str = ""
    file_size: int = 0
    content_hash: str | None = None
    processed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ProcessingQueueItem:
    id: str
    type: QueueItemType
    target: str
    status: QueueItemStatus = QueueItemStatus.PENDING
    priority: int = 1
    estimated_size: int | None = None
    estimated_chunks: int = 1
    actual_chunks: int | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class EnqueueResult:
    status: EnqueueStatus
    item: ProcessingQueueItem | None = None
    message: str = ""


@dataclass(slots=True)
class IngestionResult:
    source: str
    chunks_stored: int = 0
    skipped: bool = False
    reason: str = ""
    content_hash: str | None = None
    title: str = ""

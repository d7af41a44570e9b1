"""Persistence contract plus the in-memory implementation used by tests and the CLI."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from rfpflow.config import settings
from rfpflow.models.cache import (
    ReferenceCacheEntry,
    ReferenceChunkEntry,
    ResponseCacheEntry,
)
from rfpflow.models.jobs import CsvRow, Job, JobStepRecord, Pipeline, utcnow
from rfpflow.models.queue import (
    ProcessingQueueItem,
    QueueItemStatus,
    QueueItemType,
    ReferenceDocument,
)
from rfpflow.services.similarity import Scored, SimilarityIndex

_chunk_index: SimilarityIndex[ReferenceChunkEntry] = SimilarityIndex(lambda c: c.embedding)
_reference_index: SimilarityIndex[ReferenceCacheEntry] = SimilarityIndex(
    lambda e: e.question_embedding
)
_response_index: SimilarityIndex[ResponseCacheEntry] = SimilarityIndex(
    lambda e: e.combined_embedding
)


class Store(Protocol):
    # Jobs and pipelines
    async def save_job(self, job: Job) -> Job: ...
    async def get_job(self, job_id: str) -> Job | None: ...
    async def update_job(self, job_id: str, **fields: Any) -> Job: ...
    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline: ...
    async def get_pipeline(self, pipeline_id: str) -> Pipeline | None: ...

    # Rows and step history
    async def add_rows(self, rows: list[CsvRow]) -> None: ...
    async def get_rows(self, job_id: str) -> list[CsvRow]: ...
    async def get_row(self, job_id: str, row_index: int) -> CsvRow | None: ...
    async def update_row(self, row_id: str, **fields: Any) -> CsvRow: ...
    async def clear_enriched_data(self, job_id: str) -> int: ...
    async def add_step_record(self, record: JobStepRecord) -> JobStepRecord: ...
    async def update_step_record(self, record_id: str, **fields: Any) -> JobStepRecord: ...
    async def get_step_records(self, job_id: str, row_index: int | None = None) -> list[JobStepRecord]: ...
    async def delete_step_records(self, job_id: str) -> int: ...

    # Reference chunks
    async def add_chunks(self, chunks: list[ReferenceChunkEntry]) -> None: ...
    async def get_chunks_for_source(
        self, *, url: str | None = None, document_id: str | None = None
    ) -> list[ReferenceChunkEntry]: ...
    async def has_content_hash(self, content_hash: str) -> bool: ...
    async def delete_placeholder_chunks(self, url: str) -> int: ...
    async def find_similar_chunks(
        self, embedding: list[float], limit: int, min_similarity: float
    ) -> list[Scored[ReferenceChunkEntry]]: ...

    # Semantic caches
    async def add_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None: ...
    async def update_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None: ...
    async def find_similar_reference_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ReferenceCacheEntry] | None: ...
    async def add_response_cache_entry(self, entry: ResponseCacheEntry) -> None: ...
    async def find_similar_response_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ResponseCacheEntry] | None: ...

    # Processing queue and uploaded reference documents
    async def add_queue_item(self, item: ProcessingQueueItem) -> ProcessingQueueItem: ...
    async def get_queue_item(self, item_id: str) -> ProcessingQueueItem | None: ...
    async def find_active_queue_item(
        self, item_type: QueueItemType, target: str
    ) -> ProcessingQueueItem | None: ...
    async def claim_next_queue_item(self) -> ProcessingQueueItem | None: ...
    async def update_queue_item(self, item_id: str, **fields: Any) -> ProcessingQueueItem: ...
    async def list_queue_items(self) -> list[ProcessingQueueItem]: ...
    async def add_reference_document(self, document: ReferenceDocument) -> ReferenceDocument: ...
    async def get_reference_document(self, document_id: str) -> ReferenceDocument | None: ...
    async def update_reference_document(self, document_id: str, **fields: Any) -> ReferenceDocument: ...


def _apply(obj: Any, fields: dict[str, Any]) -> Any:
    for key, value in fields.items():
        if not hasattr(obj, key):
            raise AttributeError(f"{type(obj).__name__} has no field '{key}'")
        setattr(obj, key, value)
    return obj


class InMemoryStore:
    """Dict-backed store. Returned objects are the stored instances."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.jobs: dict[str, Job] = {}
        self.pipelines: dict[str, Pipeline] = {}
        self.rows: dict[str, CsvRow] = {}
        self.step_records: dict[str, JobStepRecord] = {}
        self.chunks: list[ReferenceChunkEntry] = []
        self.reference_entries: dict[str, ReferenceCacheEntry] = {}
        self.response_entries: dict[str, ResponseCacheEntry] = {}
        self.queue_items: dict[str, ProcessingQueueItem] = {}
        self.documents: dict[str, ReferenceDocument] = {}

    # --- Jobs / pipelines ---

    async def save_job(self, job: Job) -> Job:
        async with self._lock:
            self.jobs[job.id] = job
        return job

    async def get_job(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    async def update_job(self, job_id: str, **fields: Any) -> Job:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job not found: {job_id}")
            _apply(job, fields)
            job.updated_at = utcnow()
            return job

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        async with self._lock:
            self.pipelines[pipeline.id] = pipeline
        return pipeline

    async def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        return self.pipelines.get(pipeline_id)

    # --- Rows / step records ---

    async def add_rows(self, rows: list[CsvRow]) -> None:
        async with self._lock:
            for row in rows:
                self.rows[row.id] = row

    async def get_rows(self, job_id: str) -> list[CsvRow]:
        rows = [row for row in self.rows.values() if row.job_id == job_id]
        return sorted(rows, key=lambda r: r.row_index)

    async def get_row(self, job_id: str, row_index: int) -> CsvRow | None:
        for row in self.rows.values():
            if row.job_id == job_id and row.row_index == row_index:
                return row
        return None

    async def update_row(self, row_id: str, **fields: Any) -> CsvRow:
        async with self._lock:
            row = self.rows.get(row_id)
            if row is None:
                raise KeyError(f"Row not found: {row_id}")
            return _apply(row, fields)

    async def clear_enriched_data(self, job_id: str) -> int:
        cleared = 0
        async with self._lock:
            for row in self.rows.values():
                if row.job_id == job_id:
                    row.enriched_data = None
                    cleared += 1
        return cleared

    async def add_step_record(self, record: JobStepRecord) -> JobStepRecord:
        async with self._lock:
            self.step_records[record.id] = record
        return record

    async def update_step_record(self, record_id: str, **fields: Any) -> JobStepRecord:
        async with self._lock:
            record = self.step_records.get(record_id)
            if record is None:
                raise KeyError(f"Step record not found: {record_id}")
            return _apply(record, fields)

    async def get_step_records(self, job_id: str, row_index: int | None = None) -> list[JobStepRecord]:
        records = [
            r
            for r in self.step_records.values()
            if r.job_id == job_id and (row_index is None or r.row_index == row_index)
        ]
        return sorted(records, key=lambda r: (r.row_index, r.step_index, r.created_at))

    async def delete_step_records(self, job_id: str) -> int:
        async with self._lock:
            doomed = [rid for rid, r in self.step_records.items() if r.job_id == job_id]
            for rid in doomed:
                del self.step_records[rid]
        return len(doomed)

    # --- Reference chunks ---

    async def add_chunks(self, chunks: list[ReferenceChunkEntry]) -> None:
        async with self._lock:
            self.chunks.extend(chunks)

    async def get_chunks_for_source(
        self, *, url: str | None = None, document_id: str | None = None
    ) -> list[ReferenceChunkEntry]:
        matches = [
            c
            for c in self.chunks
            if (url is not None and c.url == url)
            or (document_id is not None and c.document_id == document_id)
        ]
        return sorted(matches, key=lambda c: (c.content_hash, c.chunk_index))

    async def has_content_hash(self, content_hash: str) -> bool:
        return any(c.content_hash == content_hash and not c.is_placeholder for c in self.chunks)

    async def delete_placeholder_chunks(self, url: str) -> int:
        async with self._lock:
            before = len(self.chunks)
            self.chunks = [c for c in self.chunks if not (c.url == url and c.is_placeholder)]
            return before - len(self.chunks)

    async def find_similar_chunks(
        self, embedding: list[float], limit: int, min_similarity: float
    ) -> list[Scored[ReferenceChunkEntry]]:
        live = [c for c in self.chunks if not c.is_placeholder]
        return _chunk_index.top_k(embedding, live, limit, min_similarity)

    # --- Semantic caches ---

    async def add_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None:
        async with self._lock:
            self.reference_entries[entry.id] = entry

    async def update_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None:
        async with self._lock:
            self.reference_entries[entry.id] = entry

    async def find_similar_reference_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ReferenceCacheEntry] | None:
        return _reference_index.best(embedding, self.reference_entries.values(), threshold)

    async def add_response_cache_entry(self, entry: ResponseCacheEntry) -> None:
        async with self._lock:
            self.response_entries[entry.id] = entry

    async def find_similar_response_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ResponseCacheEntry] | None:
        return _response_index.best(embedding, self.response_entries.values(), threshold)

    # --- Queue / documents ---

    async def add_queue_item(self, item: ProcessingQueueItem) -> ProcessingQueueItem:
        async with self._lock:
            self.queue_items[item.id] = item
        return item

    async def get_queue_item(self, item_id: str) -> ProcessingQueueItem | None:
        return self.queue_items.get(item_id)

    async def find_active_queue_item(
        self, item_type: QueueItemType, target: str
    ) -> ProcessingQueueItem | None:
        for item in self.queue_items.values():
            if (
                item.type == item_type
                and item.target == target
                and item.status in (QueueItemStatus.PENDING, QueueItemStatus.PROCESSING)
            ):
                return item
        return None

    async def claim_next_queue_item(self) -> ProcessingQueueItem | None:
        """Atomically move the next pending item to processing.

        Higher priority first, then oldest first.
        """
        async with self._lock:
            pending = [i for i in self.queue_items.values() if i.status == QueueItemStatus.PENDING]
            if not pending:
                return None
            pending.sort(key=lambda i: (-i.priority, i.created_at))
            item = pending[0]
            item.status = QueueItemStatus.PROCESSING
            item.started_at = utcnow()
            return item

    async def update_queue_item(self, item_id: str, **fields: Any) -> ProcessingQueueItem:
        async with self._lock:
            item = self.queue_items.get(item_id)
            if item is None:
                raise KeyError(f"Queue item not found: {item_id}")
            return _apply(item, fields)

    async def list_queue_items(self) -> list[ProcessingQueueItem]:
        return sorted(self.queue_items.values(), key=lambda i: i.created_at)

    async def add_reference_document(self, document: ReferenceDocument) -> ReferenceDocument:
        async with self._lock:
            self.documents[document.id] = document
        return document

    async def get_reference_document(self, document_id: str) -> ReferenceDocument | None:
        return self.documents.get(document_id)

    async def update_reference_document(self, document_id: str, **fields: Any) -> ReferenceDocument:
        async with self._lock:
            document = self.documents.get(document_id)
            if document is None:
                raise KeyError(f"Reference document not found: {document_id}")
            return _apply(document, fields)


_store: Store | None = None


def get_store() -> Store:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "memory":
            _store = InMemoryStore()
        elif backend == "postgres":
            from rfpflow.services.database import PostgresStore

            _store = PostgresStore()
        else:
            raise ValueError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store

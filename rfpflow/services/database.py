"""PostgreSQL store using asyncpg.

Embeddings are kept as JSONB arrays and scored in-process with the same
linear-scan index as the in-memory store.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import asyncpg

from rfpflow.config import settings
from rfpflow.models.cache import (
    PLACEHOLDER_CHUNK_TEXT,
    PLACEHOLDER_CONTENT_HASH,
    LinkStatus,
    ReferenceCacheEntry,
    ReferenceChunkEntry,
    ReferenceLink,
    ResponseCacheEntry,
)
from rfpflow.models.jobs import (
    AuxiliaryDocument,
    CsvRow,
    Job,
    JobStatus,
    JobStepRecord,
    Pipeline,
    StepStatus,
)
from rfpflow.models.queue import (
    ProcessingQueueItem,
    QueueItemStatus,
    QueueItemType,
    ReferenceDocument,
)
from rfpflow.services import logger as log_service
from rfpflow.services.pipelines import step_from_config
from rfpflow.services.similarity import Scored, SimilarityIndex

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipelines (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    steps JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pipeline_id TEXT REFERENCES pipelines(id),
    name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'not_started',
    total_rows INTEGER NOT NULL,
    processed_rows INTEGER NOT NULL DEFAULT 0,
    progress INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    rfp_instructions TEXT,
    additional_documents JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (processed_rows <= total_rows)
);

CREATE TABLE IF NOT EXISTS csv_rows (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    row_index INTEGER NOT NULL,
    original_data JSONB NOT NULL,
    enriched_data JSONB,
    full_contextual_question TEXT,
    feedback TEXT,
    needs_reprocessing BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (job_id, row_index)
);

CREATE TABLE IF NOT EXISTS job_steps (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    row_index INTEGER NOT NULL,
    step_index INTEGER NOT NULL,
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    input_data JSONB NOT NULL DEFAULT '{}'::jsonb,
    output_data JSONB,
    latency_ms INTEGER,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS reference_chunks (
    id TEXT PRIMARY KEY,
    url TEXT,
    document_id TEXT,
    content_hash TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    chunk_text TEXT NOT NULL,
    embedding JSONB,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (url IS NULL OR document_id IS NULL)
);
CREATE INDEX IF NOT EXISTS reference_chunks_url_idx ON reference_chunks (url);
CREATE INDEX IF NOT EXISTS reference_chunks_hash_idx ON reference_chunks (content_hash);

CREATE TABLE IF NOT EXISTS reference_cache (
    id TEXT PRIMARY KEY,
    question TEXT NOT NULL,
    question_embedding JSONB NOT NULL,
    references_data JSONB NOT NULL DEFAULT '[]'::jsonb,
    validated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS response_cache (
    id TEXT PRIMARY KEY,
    original_question TEXT NOT NULL,
    reference_summary TEXT NOT NULL,
    combined_embedding JSONB NOT NULL,
    generated_response TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS processing_queue (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    target TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 1,
    estimated_size BIGINT,
    estimated_chunks INTEGER NOT NULL DEFAULT 1,
    actual_chunks INTEGER,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS reference_documents (
    id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    path TEXT NOT NULL,
    file_type TEXT NOT NULL DEFAULT '',
    file_size BIGINT NOT NULL DEFAULT 0,
    content_hash TEXT,
    processed BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_JOB_COLUMNS = {
    "status",
    "processed_rows",
    "progress",
    "error_message",
    "rfp_instructions",
    "additional_documents",
    "pipeline_id",
    "name",
}
_ROW_COLUMNS = {"enriched_data", "full_contextual_question", "feedback", "needs_reprocessing"}
_STEP_COLUMNS = {"status", "output_data", "latency_ms", "error_message", "completed_at"}
_QUEUE_COLUMNS = {
    "status",
    "priority",
    "estimated_size",
    "estimated_chunks",
    "actual_chunks",
    "error_message",
    "started_at",
    "completed_at",
}
_DOCUMENT_COLUMNS = {"content_hash", "processed", "file_type", "file_size"}
_JSON_COLUMNS = {"additional_documents", "enriched_data", "output_data"}

_chunk_index: SimilarityIndex[ReferenceChunkEntry] = SimilarityIndex(lambda c: c.embedding)
_reference_index: SimilarityIndex[ReferenceCacheEntry] = SimilarityIndex(
    lambda e: e.question_embedding
)
_response_index: SimilarityIndex[ResponseCacheEntry] = SimilarityIndex(
    lambda e: e.combined_embedding
)


def _coerce_json(value: Any, default: Any) -> Any:
    """Decode JSONB columns that the driver hands back as text."""
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def _coerce_json_object(value: Any) -> dict[str, Any]:
    parsed = _coerce_json(value, {})
    return parsed if isinstance(parsed, dict) else {}


def _coerce_json_list(value: Any) -> list[Any]:
    parsed = _coerce_json(value, [])
    return parsed if isinstance(parsed, list) else []


def _coerce_vector(value: Any) -> list[float] | None:
    parsed = _coerce_json(value, None)
    if not isinstance(parsed, list):
        return None
    return [float(v) for v in parsed]


def _to_db(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        if column == "additional_documents":
            value = [asdict(doc) if isinstance(doc, AuxiliaryDocument) else doc for doc in value or []]
        return None if value is None else json.dumps(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def _set_clause(updates: dict[str, Any], first_param: int) -> str:
    parts = []
    for i, column in enumerate(updates):
        cast = "::jsonb" if column in _JSON_COLUMNS else ""
        parts.append(f"{column} = ${i + first_param}{cast}")
    return ", ".join(parts)


def _job_from_record(record: Any) -> Job:
    docs = [
        AuxiliaryDocument(**doc)
        for doc in _coerce_json_list(record["additional_documents"])
        if isinstance(doc, dict)
    ]
    return Job(
        id=record["id"],
        user_id=record["user_id"],
        pipeline_id=record["pipeline_id"],
        name=record["name"],
        status=JobStatus(record["status"]),
        total_rows=record["total_rows"],
        processed_rows=record["processed_rows"],
        progress=record["progress"],
        error_message=record["error_message"],
        rfp_instructions=record["rfp_instructions"],
        additional_documents=docs,
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _row_from_record(record: Any) -> CsvRow:
    enriched = record["enriched_data"]
    return CsvRow(
        id=record["id"],
        job_id=record["job_id"],
        row_index=record["row_index"],
        original_data=_coerce_json_object(record["original_data"]),
        enriched_data=None if enriched is None else _coerce_json_object(enriched),
        full_contextual_question=record["full_contextual_question"],
        feedback=record["feedback"],
        needs_reprocessing=record["needs_reprocessing"],
        created_at=record["created_at"],
    )


def _step_record_from_record(record: Any) -> JobStepRecord:
    output = record["output_data"]
    return JobStepRecord(
        id=record["id"],
        job_id=record["job_id"],
        row_index=record["row_index"],
        step_index=record["step_index"],
        step_name=record["step_name"],
        status=StepStatus(record["status"]),
        input_data=_coerce_json_object(record["input_data"]),
        output_data=None if output is None else _coerce_json_object(output),
        latency_ms=record["latency_ms"],
        error_message=record["error_message"],
        created_at=record["created_at"],
        completed_at=record["completed_at"],
    )


def _chunk_from_record(record: Any) -> ReferenceChunkEntry:
    return ReferenceChunkEntry(
        id=record["id"],
        url=record["url"],
        document_id=record["document_id"],
        content_hash=record["content_hash"],
        chunk_index=record["chunk_index"],
        chunk_text=record["chunk_text"],
        embedding=_coerce_vector(record["embedding"]),
        metadata=_coerce_json_object(record["metadata"]),
        created_at=record["created_at"],
    )


def _reference_entry_from_record(record: Any) -> ReferenceCacheEntry:
    references = []
    for ref in _coerce_json_list(record["references_data"]):
        if not isinstance(ref, dict) or not ref.get("url"):
            continue
        references.append(
            ReferenceLink(
                url=ref["url"],
                title=ref.get("title", ""),
                description=ref.get("description", ""),
                status=LinkStatus(ref.get("status", LinkStatus.UNKNOWN.value)),
                status_code=ref.get("status_code"),
                error=ref.get("error"),
            )
        )
    return ReferenceCacheEntry(
        id=record["id"],
        question=record["question"],
        question_embedding=_coerce_vector(record["question_embedding"]) or [],
        references=references,
        validated_at=record["validated_at"],
        created_at=record["created_at"],
    )


def _response_entry_from_record(record: Any) -> ResponseCacheEntry:
    return ResponseCacheEntry(
        id=record["id"],
        original_question=record["original_question"],
        reference_summary=record["reference_summary"],
        combined_embedding=_coerce_vector(record["combined_embedding"]) or [],
        generated_response=record["generated_response"],
        metadata=_coerce_json_object(record["metadata"]),
        created_at=record["created_at"],
    )


def _queue_item_from_record(record: Any) -> ProcessingQueueItem:
    return ProcessingQueueItem(
        id=record["id"],
        type=QueueItemType(record["type"]),
        target=record["target"],
        status=QueueItemStatus(record["status"]),
        priority=record["priority"],
        estimated_size=record["estimated_size"],
        estimated_chunks=record["estimated_chunks"],
        actual_chunks=record["actual_chunks"],
        error_message=record["error_message"],
        created_at=record["created_at"],
        started_at=record["started_at"],
        completed_at=record["completed_at"],
    )


def _document_from_record(record: Any) -> ReferenceDocument:
    return ReferenceDocument(
        id=record["id"],
        filename=record["filename"],
        path=record["path"],
        file_type=record["file_type"],
        file_size=record["file_size"],
        content_hash=record["content_hash"],
        processed=record["processed"],
        created_at=record["created_at"],
    )


class PostgresStore:
    def __init__(self, dsn: str | None = None, pool: Any | None = None):
        self.dsn = dsn or settings.database_url
        self._pool = pool

    async def _get_pool(self) -> Any:
        """Get or create the database connection pool."""
        if self._pool is None:
            if not self.dsn:
                raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
            self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=10)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def init_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        log_service.log_db_operation("create", "schema", "success")

    async def _update(self, table: str, allowed: set[str], key: str, fields: dict[str, Any]) -> Any:
        updates = {k: _to_db(k, v) for k, v in fields.items() if k in allowed}
        unknown = set(fields) - allowed
        if unknown:
            raise AttributeError(f"Cannot update {table} columns: {sorted(unknown)}")
        pool = await self._get_pool()
        extra = ", updated_at = now()" if table == "jobs" else ""
        async with pool.acquire() as conn:
            if updates:
                record = await conn.fetchrow(
                    f"UPDATE {table} SET {_set_clause(updates, 2)}{extra} WHERE id = $1 RETURNING *",
                    key,
                    *updates.values(),
                )
            else:
                record = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1", key)
        if record is None:
            raise KeyError(f"{table} row not found: {key}")
        log_service.log_db_operation("update", table, "success", details=",".join(updates))
        return record

    # --- Jobs / pipelines ---

    async def save_job(self, job: Job) -> Job:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO jobs (id, user_id, pipeline_id, name, status, total_rows,
                    processed_rows, progress, error_message, rfp_instructions,
                    additional_documents, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13)
                ON CONFLICT (id) DO UPDATE SET
                    pipeline_id = EXCLUDED.pipeline_id,
                    name = EXCLUDED.name,
                    status = EXCLUDED.status,
                    total_rows = EXCLUDED.total_rows,
                    processed_rows = EXCLUDED.processed_rows,
                    progress = EXCLUDED.progress,
                    error_message = EXCLUDED.error_message,
                    rfp_instructions = EXCLUDED.rfp_instructions,
                    additional_documents = EXCLUDED.additional_documents,
                    updated_at = now()
                """,
                job.id,
                job.user_id,
                job.pipeline_id,
                job.name,
                job.status.value,
                job.total_rows,
                job.processed_rows,
                job.progress,
                job.error_message,
                job.rfp_instructions,
                _to_db("additional_documents", job.additional_documents),
                job.created_at,
                job.updated_at,
            )
        log_service.log_db_operation("upsert", "jobs", "success", details=job.id)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)
        return _job_from_record(record) if record else None

    async def update_job(self, job_id: str, **fields: Any) -> Job:
        return _job_from_record(await self._update("jobs", _JOB_COLUMNS, job_id, fields))

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        steps = []
        for step in pipeline.steps:
            data = asdict(step)
            data["strategy"] = step.strategy.value if step.strategy else None
            steps.append(data)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO pipelines (id, name, description, steps)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    steps = EXCLUDED.steps
                """,
                pipeline.id,
                pipeline.name,
                pipeline.description,
                json.dumps(steps),
            )
        return pipeline

    async def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow("SELECT * FROM pipelines WHERE id = $1", pipeline_id)
        if record is None:
            return None
        steps = [step_from_config(s) for s in _coerce_json_list(record["steps"]) if isinstance(s, dict)]
        return Pipeline(
            id=record["id"],
            name=record["name"],
            description=record["description"],
            steps=steps,
        )

    # --- Rows / step records ---

    async def add_rows(self, rows: list[CsvRow]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO csv_rows (id, job_id, row_index, original_data, enriched_data,
                    full_contextual_question, feedback, needs_reprocessing)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8)
                """,
                [
                    (
                        row.id,
                        row.job_id,
                        row.row_index,
                        json.dumps(row.original_data),
                        None if row.enriched_data is None else json.dumps(row.enriched_data),
                        row.full_contextual_question,
                        row.feedback,
                        row.needs_reprocessing,
                    )
                    for row in rows
                ],
            )
        log_service.log_db_operation("insert", "csv_rows", "success", details=str(len(rows)))

    async def get_rows(self, job_id: str) -> list[CsvRow]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                "SELECT * FROM csv_rows WHERE job_id = $1 ORDER BY row_index", job_id
            )
        return [_row_from_record(r) for r in records]

    async def get_row(self, job_id: str, row_index: int) -> CsvRow | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                "SELECT * FROM csv_rows WHERE job_id = $1 AND row_index = $2", job_id, row_index
            )
        return _row_from_record(record) if record else None

    async def update_row(self, row_id: str, **fields: Any) -> CsvRow:
        return _row_from_record(await self._update("csv_rows", _ROW_COLUMNS, row_id, fields))

    async def clear_enriched_data(self, job_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE csv_rows SET enriched_data = NULL WHERE job_id = $1", job_id
            )
        return _affected(result)

    async def add_step_record(self, record: JobStepRecord) -> JobStepRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO job_steps (id, job_id, row_index, step_index, step_name, status,
                    input_data, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                """,
                record.id,
                record.job_id,
                record.row_index,
                record.step_index,
                record.step_name,
                record.status.value,
                json.dumps(record.input_data, default=str),
                record.created_at,
            )
        return record

    async def update_step_record(self, record_id: str, **fields: Any) -> JobStepRecord:
        return _step_record_from_record(
            await self._update("job_steps", _STEP_COLUMNS, record_id, fields)
        )

    async def get_step_records(self, job_id: str, row_index: int | None = None) -> list[JobStepRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if row_index is None:
                records = await conn.fetch(
                    "SELECT * FROM job_steps WHERE job_id = $1 ORDER BY row_index, step_index, created_at",
                    job_id,
                )
            else:
                records = await conn.fetch(
                    """
                    SELECT * FROM job_steps WHERE job_id = $1 AND row_index = $2
                    ORDER BY step_index, created_at
                    """,
                    job_id,
                    row_index,
                )
        return [_step_record_from_record(r) for r in records]

    async def delete_step_records(self, job_id: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM job_steps WHERE job_id = $1", job_id)
        return _affected(result)

    # --- Reference chunks ---

    async def add_chunks(self, chunks: list[ReferenceChunkEntry]) -> None:
        if not chunks:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO reference_chunks (id, url, document_id, content_hash, chunk_index,
                        chunk_text, embedding, metadata, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9)
                    """,
                    [
                        (
                            c.id,
                            c.url,
                            c.document_id,
                            c.content_hash,
                            c.chunk_index,
                            c.chunk_text,
                            None if c.embedding is None else json.dumps(c.embedding),
                            json.dumps(c.metadata, default=str),
                            c.created_at,
                        )
                        for c in chunks
                    ],
                )
        log_service.log_db_operation("insert", "reference_chunks", "success", details=str(len(chunks)))

    async def get_chunks_for_source(
        self, *, url: str | None = None, document_id: str | None = None
    ) -> list[ReferenceChunkEntry]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM reference_chunks
                WHERE ($1::text IS NOT NULL AND url = $1)
                   OR ($2::text IS NOT NULL AND document_id = $2)
                ORDER BY content_hash, chunk_index
                """,
                url,
                document_id,
            )
        return [_chunk_from_record(r) for r in records]

    async def has_content_hash(self, content_hash: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                """
                SELECT EXISTS(
                    SELECT 1 FROM reference_chunks
                    WHERE content_hash = $1 AND chunk_text <> $2
                )
                """,
                content_hash,
                PLACEHOLDER_CHUNK_TEXT,
            )
        return bool(value)

    async def delete_placeholder_chunks(self, url: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM reference_chunks
                WHERE url = $1 AND (content_hash = $2 OR chunk_text = $3)
                """,
                url,
                PLACEHOLDER_CONTENT_HASH,
                PLACEHOLDER_CHUNK_TEXT,
            )
        return _affected(result)

    async def find_similar_chunks(
        self, embedding: list[float], limit: int, min_similarity: float
    ) -> list[Scored[ReferenceChunkEntry]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch(
                """
                SELECT * FROM reference_chunks
                WHERE embedding IS NOT NULL AND content_hash <> $1
                """,
                PLACEHOLDER_CONTENT_HASH,
            )
        chunks = [_chunk_from_record(r) for r in records]
        return _chunk_index.top_k(embedding, chunks, limit, min_similarity)

    # --- Semantic caches ---

    async def add_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reference_cache (id, question, question_embedding, references_data,
                    validated_at, created_at)
                VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6)
                """,
                entry.id,
                entry.question,
                json.dumps(entry.question_embedding),
                json.dumps([asdict(ref) for ref in entry.references], default=str),
                entry.validated_at,
                entry.created_at,
            )

    async def update_reference_cache_entry(self, entry: ReferenceCacheEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reference_cache SET references_data = $2::jsonb, validated_at = $3
                WHERE id = $1
                """,
                entry.id,
                json.dumps([asdict(ref) for ref in entry.references], default=str),
                entry.validated_at,
            )

    async def find_similar_reference_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ReferenceCacheEntry] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch("SELECT * FROM reference_cache")
        entries = [_reference_entry_from_record(r) for r in records]
        return _reference_index.best(embedding, entries, threshold)

    async def add_response_cache_entry(self, entry: ResponseCacheEntry) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO response_cache (id, original_question, reference_summary,
                    combined_embedding, generated_response, metadata, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5, $6::jsonb, $7)
                """,
                entry.id,
                entry.original_question,
                entry.reference_summary,
                json.dumps(entry.combined_embedding),
                entry.generated_response,
                json.dumps(entry.metadata, default=str),
                entry.created_at,
            )

    async def find_similar_response_entry(
        self, embedding: list[float], threshold: float
    ) -> Scored[ResponseCacheEntry] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch("SELECT * FROM response_cache")
        entries = [_response_entry_from_record(r) for r in records]
        return _response_index.best(embedding, entries, threshold)

    # --- Queue / documents ---

    async def add_queue_item(self, item: ProcessingQueueItem) -> ProcessingQueueItem:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO processing_queue (id, type, target, status, priority, estimated_size,
                    estimated_chunks, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                item.id,
                item.type.value,
                item.target,
                item.status.value,
                item.priority,
                item.estimated_size,
                item.estimated_chunks,
                item.created_at,
            )
        return item

    async def get_queue_item(self, item_id: str) -> ProcessingQueueItem | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow("SELECT * FROM processing_queue WHERE id = $1", item_id)
        return _queue_item_from_record(record) if record else None

    async def find_active_queue_item(
        self, item_type: QueueItemType, target: str
    ) -> ProcessingQueueItem | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT * FROM processing_queue
                WHERE type = $1 AND target = $2 AND status IN ('pending', 'processing')
                ORDER BY created_at
                LIMIT 1
                """,
                item_type.value,
                target,
            )
        return _queue_item_from_record(record) if record else None

    async def claim_next_queue_item(self) -> ProcessingQueueItem | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                UPDATE processing_queue SET status = 'processing', started_at = now()
                WHERE id = (
                    SELECT id FROM processing_queue
                    WHERE status = 'pending'
                    ORDER BY priority DESC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """
            )
        return _queue_item_from_record(record) if record else None

    async def update_queue_item(self, item_id: str, **fields: Any) -> ProcessingQueueItem:
        return _queue_item_from_record(
            await self._update("processing_queue", _QUEUE_COLUMNS, item_id, fields)
        )

    async def list_queue_items(self) -> list[ProcessingQueueItem]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            records = await conn.fetch("SELECT * FROM processing_queue ORDER BY created_at")
        return [_queue_item_from_record(r) for r in records]

    async def add_reference_document(self, document: ReferenceDocument) -> ReferenceDocument:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reference_documents (id, filename, path, file_type, file_size,
                    content_hash, processed, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                document.id,
                document.filename,
                document.path,
                document.file_type,
                document.file_size,
                document.content_hash,
                document.processed,
                document.created_at,
            )
        return document

    async def get_reference_document(self, document_id: str) -> ReferenceDocument | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow("SELECT * FROM reference_documents WHERE id = $1", document_id)
        return _document_from_record(record) if record else None

    async def update_reference_document(self, document_id: str, **fields: Any) -> ReferenceDocument:
        return _document_from_record(
            await self._update("reference_documents", _DOCUMENT_COLUMNS, document_id, fields)
        )


def _affected(status: str) -> int:
    """Parse the row count from a command tag like 'DELETE 3'."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from rfpflow.models.jobs import JobStatus, Pipeline, StepConfig, StepStrategy
from rfpflow.models.queue import QueueItemStatus
from rfpflow.services.database import PostgresStore, _affected

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _FakeConnection:
    def __init__(self, rows: dict[str, list[dict]] | None = None, command_tag: str = "UPDATE 0"):
        self.rows = rows or {}
        self.command_tag = command_tag
        self.calls: list[tuple[str, str, tuple]] = []

    def _match(self, query: str) -> list[dict]:
        for needle, records in self.rows.items():
            if needle in query:
                return records
        return []

    async def fetchrow(self, query, *args):
        self.calls.append(("fetchrow", query, args))
        records = self._match(query)
        return records[0] if records else None

    async def fetch(self, query, *args):
        self.calls.append(("fetch", query, args))
        return self._match(query)

    async def fetchval(self, query, *args):
        self.calls.append(("fetchval", query, args))
        return bool(self._match(query))

    async def execute(self, query, *args):
        self.calls.append(("execute", query, args))
        return self.command_tag

    async def executemany(self, query, args):
        self.calls.append(("executemany", query, tuple(args)))

    @asynccontextmanager
    async def transaction(self):
        yield


class _FakePool:
    def __init__(self, conn: _FakeConnection):
        self.conn = conn

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _job_record(**overrides) -> dict:
    record = {
        "id": "job-1",
        "user_id": "user-1",
        "pipeline_id": "pipe-1",
        "name": "Security questionnaire",
        "status": "in_progress",
        "total_rows": 10,
        "processed_rows": 4,
        "progress": 40,
        "error_message": None,
        "rfp_instructions": "Be concise",
        "additional_documents": '[{"name": "profile.pdf", "path": "/tmp/profile.pdf"}]',
        "created_at": NOW,
        "updated_at": NOW,
    }
    record.update(overrides)
    return record


@pytest.mark.asyncio
async def test_get_job_decodes_jsonb_text_columns():
    conn = _FakeConnection({"FROM jobs": [_job_record()]})
    store = PostgresStore(pool=_FakePool(conn))

    job = await store.get_job("job-1")

    assert job.status == JobStatus.IN_PROGRESS
    assert job.processed_rows == 4
    assert job.additional_documents[0].name == "profile.pdf"
    assert conn.calls[0][2] == ("job-1",)


@pytest.mark.asyncio
async def test_update_job_builds_parameterized_set_clause():
    conn = _FakeConnection({"UPDATE jobs": [_job_record(status="paused")]})
    store = PostgresStore(pool=_FakePool(conn))

    job = await store.update_job("job-1", status=JobStatus.PAUSED, processed_rows=4)

    _, query, args = conn.calls[0]
    assert "status = $2, processed_rows = $3" in query
    assert "updated_at = now()" in query
    assert args == ("job-1", "paused", 4)
    assert job.status == JobStatus.PAUSED


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns():
    store = PostgresStore(pool=_FakePool(_FakeConnection()))
    with pytest.raises(AttributeError):
        await store.update_job("job-1", total_rows=99)


@pytest.mark.asyncio
async def test_update_row_serializes_enriched_data_as_jsonb():
    row = {
        "id": "row-1",
        "job_id": "job-1",
        "row_index": 0,
        "original_data": '{"Question": "q"}',
        "enriched_data": '{"Question": "q", "Draft": "a"}',
        "full_contextual_question": None,
        "feedback": None,
        "needs_reprocessing": False,
        "created_at": NOW,
    }
    conn = _FakeConnection({"UPDATE csv_rows": [row]})
    store = PostgresStore(pool=_FakePool(conn))

    updated = await store.update_row("row-1", enriched_data={"Question": "q", "Draft": "a"})

    _, query, args = conn.calls[0]
    assert "enriched_data = $2::jsonb" in query
    assert json.loads(args[1]) == {"Question": "q", "Draft": "a"}
    assert updated.enriched_data["Draft"] == "a"


@pytest.mark.asyncio
async def test_missing_row_update_raises_key_error():
    store = PostgresStore(pool=_FakePool(_FakeConnection()))
    with pytest.raises(KeyError):
        await store.update_row("missing", needs_reprocessing=False)


@pytest.mark.asyncio
async def test_pipeline_round_trips_step_strategy():
    conn = _FakeConnection()
    store = PostgresStore(pool=_FakePool(conn))
    pipeline = Pipeline(
        id="pipe-1",
        name="Default",
        steps=[StepConfig(name="Research", model="gpt-4o", strategy=StepStrategy.RESEARCH, tools=["no_cache"])],
    )

    await store.save_pipeline(pipeline)
    steps_json = conn.calls[0][2][3]
    conn.rows["FROM pipelines"] = [
        {"id": "pipe-1", "name": "Default", "description": "", "steps": steps_json}
    ]
    loaded = await store.get_pipeline("pipe-1")

    assert loaded.steps[0].strategy == StepStrategy.RESEARCH
    assert loaded.steps[0].tools == ["no_cache"]


@pytest.mark.asyncio
async def test_claim_next_queue_item_uses_skip_locked():
    item = {
        "id": "item-1",
        "type": "url",
        "target": "https://example.com/",
        "status": "processing",
        "priority": 3,
        "estimated_size": None,
        "estimated_chunks": 1,
        "actual_chunks": None,
        "error_message": None,
        "created_at": NOW,
        "started_at": NOW,
        "completed_at": None,
    }
    conn = _FakeConnection({"UPDATE processing_queue": [item]})
    store = PostgresStore(pool=_FakePool(conn))

    claimed = await store.claim_next_queue_item()

    query = conn.calls[0][1]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "ORDER BY priority DESC, created_at ASC" in query
    assert claimed.status == QueueItemStatus.PROCESSING


@pytest.mark.asyncio
async def test_find_similar_chunks_scores_in_process():
    chunks = [
        {
            "id": f"c{i}",
            "url": "https://example.com/",
            "document_id": None,
            "content_hash": "h",
            "chunk_index": i,
            "chunk_text": f"chunk {i}",
            "embedding": json.dumps(vector),
            "metadata": "{}",
            "created_at": NOW,
        }
        for i, vector in enumerate([[1.0, 0.0], [0.0, 1.0], [0.9, 0.1]])
    ]
    store = PostgresStore(pool=_FakePool(_FakeConnection({"FROM reference_chunks": chunks})))

    hits = await store.find_similar_chunks([1.0, 0.0], limit=5, min_similarity=0.5)

    assert [hit.item.id for hit in hits] == ["c0", "c2"]


@pytest.mark.asyncio
async def test_delete_step_records_returns_affected_count():
    store = PostgresStore(pool=_FakePool(_FakeConnection(command_tag="DELETE 6")))
    assert await store.delete_step_records("job-1") == 6


def test_affected_parses_command_tags():
    assert _affected("UPDATE 3") == 3
    assert _affected("INSERT 0 1") == 1
    assert _affected("garbage") == 0


@pytest.mark.asyncio
async def test_missing_dsn_raises():
    store = PostgresStore(dsn="")
    store.dsn = ""
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        await store.get_job("job-1")


@pytest.mark.asyncio
async def test_init_schema_creates_every_table():
    conn = _FakeConnection()
    store = PostgresStore(pool=_FakePool(conn))

    await store.init_schema()

    ddl = conn.calls[0][1]
    for table in ("jobs", "pipelines", "csv_rows", "job_steps", "reference_chunks", "processing_queue"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in ddl

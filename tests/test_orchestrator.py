from __future__ import annotations

import asyncio
import json

import pytest

from rfpflow.agents.base import BaseStepAgent
from rfpflow.agents.context_resolver import ContextResolver
from rfpflow.agents.orchestrator import JobOrchestrator, create_job
from rfpflow.agents.step_executor import StepExecutor
from rfpflow.errors import AlreadyRunning, NoPipeline, NotFound
from rfpflow.models.events import EventType
from rfpflow.models.jobs import JobStatus, Pipeline, StepConfig, StepStatus, StepStrategy
from rfpflow.services.notifier import EventBus
from rfpflow.services.store import InMemoryStore
from tests.fakes import FakeLLM


class _RecordingAgent(BaseStepAgent):
    def __init__(self, strategy: StepStrategy, *, fail_on_row: int | None = None, delay: float = 0.0):
        super().__init__(FakeLLM())
        self.strategy = strategy
        self.fail_on_row = fail_on_row
        self.delay = delay
        self.rows: list[int] = []
        self.questions: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, step, row, *, job_id=""):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.rows.append(row.row_index)
            self.questions.append(row.contextual_question)
            if row.row_index == self.fail_on_row:
                raise RuntimeError("provider exploded")
            return f"{step.name} for row {row.row_index}"
        finally:
            self.in_flight -= 1


async def _setup(store, *, rows: int = 3, draft: _RecordingAgent | None = None, resolver=None):
    research = _RecordingAgent(StepStrategy.RESEARCH)
    draft = draft or _RecordingAgent(StepStrategy.DRAFT)
    executor = StepExecutor(
        {
            StepStrategy.RESEARCH: research,
            StepStrategy.DRAFT: draft,
            StepStrategy.PROMPT: _RecordingAgent(StepStrategy.PROMPT),
        }
    )
    await store.save_pipeline(
        Pipeline(
            id="pipe-1",
            name="Test pipeline",
            steps=[
                StepConfig(name="Research", model="gpt-4o", strategy=StepStrategy.RESEARCH),
                StepConfig(name="Draft", model="gpt-4o", strategy=StepStrategy.DRAFT),
            ],
        )
    )
    job = await create_job(
        store,
        user_id="user-1",
        pipeline_id="pipe-1",
        records=[{"Question": f"What is the answer to question {i}?"} for i in range(rows)],
    )
    bus = EventBus()
    orchestrator = JobOrchestrator(store, executor, notifier=bus, context_resolver=resolver)
    return orchestrator, job, bus, research, draft


@pytest.mark.asyncio
async def test_job_runs_every_row_through_every_step(store):
    orchestrator, job, bus, research, draft = await _setup(store)

    result = await orchestrator.start_job(job.id)

    assert result.status == JobStatus.COMPLETED
    assert result.processed_rows == 3
    assert result.progress == 100
    assert research.rows == [0, 1, 2]
    assert draft.rows == [0, 1, 2]

    rows = await store.get_rows(job.id)
    assert rows[1].enriched_data == {
        "Question": "What is the answer to question 1?",
        "Research": "Research for row 1",
        "Draft": "Draft for row 1",
    }
    records = await store.get_step_records(job.id)
    assert len(records) == 6
    assert all(r.status == StepStatus.COMPLETED and r.latency_ms is not None for r in records)

    assert [e.data["progress"] for e in bus.events_of(EventType.ROW_PROCESSED)] == [33, 67, 100]
    assert len(bus.events_of(EventType.JOB_STARTED)) == 1
    assert len(bus.events_of(EventType.JOB_COMPLETED)) == 1
    assert len(bus.events_of(EventType.STEP_COMPLETED)) == 6
    assert not orchestrator.is_job_active(job.id)


@pytest.mark.asyncio
async def test_pause_after_first_row_then_resume_completes(store):
    orchestrator, job, bus, research, _ = await _setup(store)

    async def pause_after_first_row(event):
        if event.data["row_index"] == 0:
            await orchestrator.pause_job(job.id)

    unsubscribe = bus.subscribe(pause_after_first_row, [EventType.ROW_PROCESSED])
    paused = await orchestrator.start_job(job.id)
    unsubscribe()

    assert paused.status == JobStatus.PAUSED
    assert paused.processed_rows == 1
    assert paused.progress == 33
    assert orchestrator.is_job_paused(job.id)
    rows = await store.get_rows(job.id)
    assert rows[0].enriched_data is not None
    assert rows[1].enriched_data is None
    assert bus.events_of(EventType.JOB_PAUSED)[-1].data["processed_rows"] == 1

    resumed = await orchestrator.resume_job(job.id)

    assert resumed.status == JobStatus.COMPLETED
    assert resumed.processed_rows == 3
    assert research.rows == [0, 1, 2]
    assert len(bus.events_of(EventType.JOB_COMPLETED)) == 1
    assert not orchestrator.is_job_paused(job.id)


@pytest.mark.asyncio
async def test_resume_while_still_active_only_resyncs_observers(store):
    orchestrator, job, bus, research, _ = await _setup(store)

    async def pause_and_resume(event):
        if event.data["row_index"] == 0:
            await orchestrator.pause_job(job.id)
            await orchestrator.resume_job(job.id)

    bus.subscribe(pause_and_resume, [EventType.ROW_PROCESSED])
    result = await orchestrator.start_job(job.id)

    assert result.status == JobStatus.COMPLETED
    assert research.rows == [0, 1, 2]
    assert len(bus.events_of(EventType.JOB_STARTED)) == 2
    assert len(bus.events_of(EventType.JOB_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_concurrent_start_raises_already_running(store):
    slow_draft = _RecordingAgent(StepStrategy.DRAFT, delay=0.01)
    orchestrator, job, _, _, draft = await _setup(store, draft=slow_draft)

    results = await asyncio.gather(
        orchestrator.start_job(job.id),
        orchestrator.start_job(job.id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyRunning)
    assert draft.max_in_flight == 1
    assert draft.rows == [0, 1, 2]
    assert (await store.get_job(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_step_failure_puts_job_in_error(store):
    failing_draft = _RecordingAgent(StepStrategy.DRAFT, fail_on_row=1)
    orchestrator, job, bus, research, _ = await _setup(store, draft=failing_draft)

    result = await orchestrator.start_job(job.id)

    assert result.status == JobStatus.ERROR
    assert result.error_message == "provider exploded"
    assert result.processed_rows == 1
    assert research.rows == [0, 1]
    assert bus.events_of(EventType.JOB_ERROR)[0].data["message"] == "provider exploded"
    assert not bus.events_of(EventType.JOB_COMPLETED)

    failed = [r for r in await store.get_step_records(job.id, row_index=1) if r.step_name == "Draft"]
    assert failed[0].status == StepStatus.ERROR
    assert failed[0].error_message == "provider exploded"
    assert (await store.get_rows(job.id))[1].enriched_data is None
    assert not orchestrator.is_job_active(job.id)


@pytest.mark.asyncio
async def test_reset_clears_progress_rows_and_step_history(store):
    orchestrator, job, bus, research, _ = await _setup(store)
    await orchestrator.start_job(job.id)

    reset = await orchestrator.reset_job(job.id)

    assert reset.status == JobStatus.NOT_STARTED
    assert reset.processed_rows == 0
    assert reset.progress == 0
    assert reset.error_message is None
    assert all(row.enriched_data is None for row in await store.get_rows(job.id))
    assert await store.get_step_records(job.id) == []
    assert len(bus.events_of(EventType.JOB_RESET)) == 1

    rerun = await orchestrator.start_job(job.id)
    assert rerun.status == JobStatus.COMPLETED
    assert research.rows == [0, 1, 2, 0, 1, 2]


@pytest.mark.asyncio
async def test_reprocess_restarts_from_first_row(store):
    orchestrator, job, _, research, _ = await _setup(store)
    await orchestrator.start_job(job.id)

    result = await orchestrator.reprocess_job(job.id)

    assert result.status == JobStatus.COMPLETED
    assert research.rows == [0, 1, 2, 0, 1, 2]
    assert len(await store.get_step_records(job.id)) == 6


@pytest.mark.asyncio
async def test_cancel_mid_row_stops_before_next_step(store):
    orchestrator, job, bus, _, draft = await _setup(store)

    async def cancel_on_second_row(event):
        if event.data["row_index"] == 1 and event.data["step_name"] == "Research":
            await orchestrator.cancel_job(job.id)

    bus.subscribe(cancel_on_second_row, [EventType.STEP_COMPLETED])
    result = await orchestrator.start_job(job.id)

    assert result.status == JobStatus.CANCELLED
    assert result.processed_rows == 1
    assert draft.rows == [0]
    assert (await store.get_rows(job.id))[1].enriched_data is None
    assert len(bus.events_of(EventType.JOB_CANCELLED)) == 1
    assert not bus.events_of(EventType.JOB_COMPLETED)
    assert not bus.events_of(EventType.JOB_ERROR)


@pytest.mark.asyncio
async def test_pause_of_idle_job_emits_paused_event(store):
    orchestrator, job, bus, _, _ = await _setup(store)

    paused = await orchestrator.pause_job(job.id)

    assert paused.status == JobStatus.PAUSED
    assert len(bus.events_of(EventType.JOB_PAUSED)) == 1


@pytest.mark.asyncio
async def test_missing_job_and_pipeline_conditions(store):
    orchestrator, job, _, _, _ = await _setup(store)

    with pytest.raises(NotFound):
        await orchestrator.start_job("no-such-job")

    orphan = await create_job(store, user_id="user-1", pipeline_id=None, records=[{"Question": "q"}])
    with pytest.raises(NoPipeline):
        await orchestrator.start_job(orphan.id)
    assert not orchestrator.is_job_active(orphan.id)

    dangling = await create_job(store, user_id="user-1", pipeline_id="gone", records=[{"Question": "q"}])
    with pytest.raises(NotFound) as excinfo:
        await orchestrator.start_job(dangling.id)
    assert excinfo.value.kind == "Pipeline"

    with pytest.raises(NotFound):
        await orchestrator.cancel_job("no-such-job")


@pytest.mark.asyncio
async def test_rows_see_context_resolved_questions(store):
    def responder(system_prompt, user_prompt, params):
        assert params.json_output
        return json.dumps(
            {
                "fullContextualQuestion": "Resolved follow-up question",
                "hasReferences": True,
                "referencedQuestions": [1],
                "reasoning": "refers to Q1",
            }
        )

    llm = FakeLLM(responder)
    orchestrator, job, _, research, _ = await _setup(store, rows=2, resolver=ContextResolver(llm, model="gpt-4o"))

    await orchestrator.start_job(job.id)

    assert research.questions == ["What is the answer to question 0?", "Resolved follow-up question"]
    assert len(llm.calls) == 1
    rows = await store.get_rows(job.id)
    assert rows[1].full_contextual_question == "Resolved follow-up question"


@pytest.mark.asyncio
async def test_launch_runs_job_in_background(store):
    orchestrator, job, bus, _, _ = await _setup(store, rows=2)

    task = orchestrator.launch(job.id)
    result = await task

    assert result.status == JobStatus.COMPLETED
    assert len(bus.events_of(EventType.JOB_COMPLETED)) == 1


class _GatedStore(InMemoryStore):
    """Holds the first enriched-data write until ``release_commit`` is set."""

    def __init__(self):
        super().__init__()
        self.commit_started = asyncio.Event()
        self.release_commit = asyncio.Event()

    async def update_row(self, row_id, **fields):
        if fields.get("enriched_data") is not None and not self.release_commit.is_set():
            self.commit_started.set()
            await self.release_commit.wait()
        return await super().update_row(row_id, **fields)


@pytest.mark.asyncio
async def test_reset_during_row_commit_is_not_undone_by_the_old_run():
    store = _GatedStore()
    orchestrator, job, bus, research, _ = await _setup(store)

    run = orchestrator.launch(job.id)
    await store.commit_started.wait()
    reset = asyncio.create_task(orchestrator.reset_job(job.id))
    await asyncio.sleep(0)
    store.release_commit.set()
    await asyncio.gather(run, reset)

    after = await store.get_job(job.id)
    assert after.status == JobStatus.NOT_STARTED
    assert after.processed_rows == 0
    assert after.progress == 0
    assert all(row.enriched_data is None for row in await store.get_rows(job.id))
    assert await store.get_step_records(job.id) == []

    rerun = await orchestrator.start_job(job.id)

    assert rerun.status == JobStatus.COMPLETED
    assert research.rows[-3:] == [0, 1, 2]
    assert len(await store.get_step_records(job.id)) == 6


@pytest.mark.asyncio
async def test_pause_and_cancel_leave_finished_jobs_alone(store):
    orchestrator, job, bus, _, _ = await _setup(store)
    await orchestrator.start_job(job.id)

    paused = await orchestrator.pause_job(job.id)
    cancelled = await orchestrator.cancel_job(job.id)

    assert paused.status == JobStatus.COMPLETED
    assert cancelled.status == JobStatus.COMPLETED
    assert (await store.get_job(job.id)).status == JobStatus.COMPLETED
    assert not orchestrator.is_job_paused(job.id)
    assert not bus.events_of(EventType.JOB_PAUSED)
    assert not bus.events_of(EventType.JOB_CANCELLED)


@pytest.mark.asyncio
async def test_cancel_of_paused_job_is_allowed(store):
    orchestrator, job, bus, _, _ = await _setup(store)
    await orchestrator.pause_job(job.id)

    cancelled = await orchestrator.cancel_job(job.id)

    assert cancelled.status == JobStatus.CANCELLED
    assert len(bus.events_of(EventType.JOB_CANCELLED)) == 1

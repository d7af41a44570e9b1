from __future__ import annotations

import asyncio
import time
from typing import Any

from loguru import logger

from rfpflow.agents.context_resolver import (
    ContextResolver,
    extract_question_text,
    load_additional_documents,
)
from rfpflow.agents.draft_agent import DraftAgent
from rfpflow.agents.feedback_agent import FeedbackReprocessor, FeedbackSummary
from rfpflow.agents.prompt_agent import PromptAgent
from rfpflow.agents.research_agent import ResearchAgent
from rfpflow.agents.step_executor import StepExecutor, resolve_strategy
from rfpflow.agents.tailor_agent import TailorAgent
from rfpflow.errors import NoPipeline, NotFound, StepFailure
from rfpflow.llm_client import CompletionClient
from rfpflow.llm_client import client as llm_client
from rfpflow.models.jobs import (
    AuxiliaryDocument,
    CsvRow,
    Job,
    JobStatus,
    JobStepRecord,
    LoadedDocument,
    Pipeline,
    RowContext,
    StepConfig,
    StepStatus,
    StepStrategy,
    new_id,
    utcnow,
)
from rfpflow.services import logger as log_service
from rfpflow.services import streaming
from rfpflow.services.embeddings import EmbeddingService, get_embedding_service
from rfpflow.services.ingestion import ReferenceIngestor
from rfpflow.services.job_registry import ActiveJobRegistry
from rfpflow.services.notifier import NullNotifier
from rfpflow.services.semantic_cache import ReferenceCache, ResponseCache
from rfpflow.services.store import Store, get_store


_PAUSABLE = frozenset({JobStatus.NOT_STARTED, JobStatus.IN_PROGRESS, JobStatus.PAUSED})
_CANCELLABLE = frozenset({JobStatus.IN_PROGRESS, JobStatus.PAUSED})


def _progress(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(round(done / total * 100))


async def create_job(
    store: Store,
    *,
    user_id: str,
    pipeline_id: str | None,
    records: list[dict[str, Any]],
    name: str = "",
    rfp_instructions: str | None = None,
    additional_documents: list[AuxiliaryDocument] | None = None,
) -> Job:
    """Persist a job and one row per parsed CSV record."""
    job = Job(
        id=new_id(),
        user_id=user_id,
        pipeline_id=pipeline_id,
        total_rows=len(records),
        name=name,
        rfp_instructions=rfp_instructions,
        additional_documents=list(additional_documents or []),
    )
    await store.save_job(job)
    await store.add_rows(
        [
            CsvRow(id=new_id(), job_id=job.id, row_index=index, original_data=dict(record))
            for index, record in enumerate(records)
        ]
    )
    return job


class JobOrchestrator:
    """Drives a job's rows through its pipeline, one row and one step at a time.

    Flow per run:
      1. Claim the job in the active registry (one run per job)
      2. Resolve each row's question against the earlier rows
      3. Run every pipeline step, recording a step record per attempt
      4. Commit the row's enriched data, then advance the checkpoint
      5. Stop at row boundaries when paused or cancelled

    Lifecycle changes are published on the notifier as SSE events.
    """

    def __init__(
        self,
        store: Store,
        executor: StepExecutor,
        *,
        notifier: Any | None = None,
        context_resolver: ContextResolver | None = None,
        feedback: FeedbackReprocessor | None = None,
        registry: ActiveJobRegistry | None = None,
    ):
        self.store = store
        self.executor = executor
        self.notifier = notifier or NullNotifier()
        self.context_resolver = context_resolver
        self.feedback = feedback
        self.registry = registry or ActiveJobRegistry()

    # --- Queries ---

    def is_job_active(self, job_id: str) -> bool:
        return self.registry.is_active(job_id)

    def is_job_paused(self, job_id: str) -> bool:
        return self.registry.is_paused(job_id)

    async def _require_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFound("Job", job_id)
        return job

    async def _require_pipeline(self, job: Job) -> Pipeline:
        if not job.pipeline_id:
            raise NoPipeline(job.id)
        pipeline = await self.store.get_pipeline(job.pipeline_id)
        if pipeline is None:
            raise NotFound("Pipeline", job.pipeline_id)
        return pipeline

    # --- Lifecycle ---

    async def start_job(self, job_id: str) -> Job:
        """Run the job from its checkpoint until it completes, pauses, is cancelled or fails."""
        token = await self.registry.acquire(job_id)
        try:
            job = await self._require_job(job_id)
            pipeline = await self._require_pipeline(job)
        except Exception:
            await self.registry.release(job_id, token)
            raise

        try:
            job = await self.store.update_job(job_id, status=JobStatus.IN_PROGRESS, error_message=None)
            logger.info(f"Starting job {job_id} at row {job.processed_rows}/{job.total_rows}")
            await self.notifier.publish(
                streaming.job_started(job_id, job.total_rows, job.processed_rows)
            )
            await self._run_rows(job, pipeline, token)
        except Exception as exc:
            message = exc.message if isinstance(exc, StepFailure) else (str(exc) or type(exc).__name__)
            logger.error(f"Job {job_id} failed: {message}")
            async with self.registry.commit_lock(job_id):
                owned = self.registry.is_active(job_id, token)
                if owned:
                    await self.store.update_job(job_id, status=JobStatus.ERROR, error_message=message)
            if owned:
                await self.notifier.publish(streaming.job_error(job_id, message))
        finally:
            await self.registry.release(job_id, token)
        return await self._require_job(job_id)

    def launch(self, job_id: str) -> asyncio.Task:
        """Background variant of start_job for callers that must not wait."""
        return asyncio.create_task(self.start_job(job_id), name=f"job-{job_id}")

    async def pause_job(self, job_id: str) -> Job:
        job = await self._require_job(job_id)
        if job.status not in _PAUSABLE and not self.registry.is_active(job_id):
            logger.info(f"Ignoring pause of job {job_id} in status {job.status}")
            return job
        self.registry.mark_paused(job_id)
        job = await self.store.update_job(job_id, status=JobStatus.PAUSED)
        if not self.registry.is_active(job_id):
            # An active run reports the pause itself once it reaches a row boundary.
            await self.notifier.publish(streaming.job_paused(job_id, job.processed_rows, job.progress))
        return job

    async def resume_job(self, job_id: str) -> Job:
        job = await self._require_job(job_id)
        self.registry.clear_paused(job_id)
        if self.registry.is_active(job_id):
            job = await self.store.update_job(job_id, status=JobStatus.IN_PROGRESS)
            await self.notifier.publish(
                streaming.job_started(job_id, job.total_rows, job.processed_rows)
            )
            return job
        return await self.start_job(job_id)

    async def cancel_job(self, job_id: str) -> Job:
        job = await self._require_job(job_id)
        if job.status not in _CANCELLABLE and not self.registry.is_active(job_id):
            logger.info(f"Ignoring cancel of job {job_id} in status {job.status}")
            return job
        async with self.registry.commit_lock(job_id):
            await self.registry.deactivate(job_id)
            self.registry.clear_paused(job_id)
            job = await self.store.update_job(job_id, status=JobStatus.CANCELLED)
        logger.info(f"Cancelled job {job_id}")
        await self.notifier.publish(streaming.job_cancelled(job_id))
        return job

    async def reset_job(self, job_id: str) -> Job:
        """Discard all progress so the next start begins at row 0."""
        await self._require_job(job_id)
        async with self.registry.commit_lock(job_id):
            await self.registry.clear(job_id)
            cleared = await self.store.clear_enriched_data(job_id)
            deleted = await self.store.delete_step_records(job_id)
            for row in await self.store.get_rows(job_id):
                if row.full_contextual_question is not None:
                    await self.store.update_row(row.id, full_contextual_question=None)
            job = await self.store.update_job(
                job_id,
                status=JobStatus.NOT_STARTED,
                processed_rows=0,
                progress=0,
                error_message=None,
            )
        logger.info(f"Reset job {job_id}: {cleared} rows cleared, {deleted} step records deleted")
        await self.notifier.publish(streaming.job_reset(job_id))
        return job

    async def reprocess_job(self, job_id: str) -> Job:
        await self.reset_job(job_id)
        return await self.start_job(job_id)

    # --- Row loop ---

    def _should_stop(self, job_id: str, token: int) -> bool:
        return self.registry.is_paused(job_id) or not self.registry.is_active(job_id, token)

    async def _checkpoint_pause(self, job: Job, row_index: int, token: int) -> bool:
        """Persist a pause at ``row_index``. Returns False when a resume raced in."""
        progress = _progress(row_index, job.total_rows)
        async with self.registry.commit_lock(job.id):
            if not self.registry.is_active(job.id, token):
                return True
            await self.store.update_job(
                job.id, status=JobStatus.PAUSED, processed_rows=row_index, progress=progress
            )
        logger.info(f"Paused job {job.id} at row {row_index}/{job.total_rows}")
        await self.notifier.publish(streaming.job_paused(job.id, row_index, progress))
        if self.registry.is_paused(job.id) or not self.registry.is_active(job.id, token):
            return True
        await self.store.update_job(job.id, status=JobStatus.IN_PROGRESS)
        await self.notifier.publish(streaming.job_started(job.id, job.total_rows, row_index))
        return False

    async def _run_rows(self, job: Job, pipeline: Pipeline, token: int) -> None:
        rows = {row.row_index: row for row in await self.store.get_rows(job.id)}
        questions = [
            extract_question_text(rows[index].original_data) if index in rows else ""
            for index in range(job.total_rows)
        ]
        documents = await load_additional_documents(job.additional_documents) if job.additional_documents else []

        row_index = job.processed_rows
        while row_index < job.total_rows:
            if self.registry.is_paused(job.id) and await self._checkpoint_pause(job, row_index, token):
                return
            if not self.registry.is_active(job.id, token):
                logger.info(f"Job {job.id} is no longer active, stopping before row {row_index}")
                return

            row = rows.get(row_index)
            if row is None:
                raise NotFound("Row", f"{job.id}#{row_index}")

            context = await self._process_row(job, pipeline, row, questions, documents, token)
            if context is None:
                # Abandoned rows are retried from step 0 after the checks above.
                continue

            processed = row_index + 1
            progress = _progress(processed, job.total_rows)
            async with self.registry.commit_lock(job.id):
                if not self.registry.is_active(job.id, token):
                    return
                await self.store.update_row(row.id, enriched_data=context.enriched_data())
                await self.store.update_job(job.id, processed_rows=processed, progress=progress)
            await self.notifier.publish(
                streaming.row_processed(job.id, row_index, progress, job.total_rows)
            )
            row_index = processed

        async with self.registry.commit_lock(job.id):
            if not self.registry.is_active(job.id, token):
                return
            self.registry.clear_paused(job.id)
            await self.store.update_job(
                job.id, status=JobStatus.COMPLETED, processed_rows=job.total_rows, progress=100
            )
        logger.info(f"Completed job {job.id} ({job.total_rows} rows)")
        await self.notifier.publish(streaming.job_completed(job.id, job.total_rows))

    async def _contextual_question(
        self,
        job: Job,
        row: CsvRow,
        questions: list[str],
        documents: list[LoadedDocument],
        token: int,
    ) -> str:
        if row.full_contextual_question:
            return row.full_contextual_question
        question = questions[row.row_index]
        if self.context_resolver is None or not question:
            return question
        resolution = await self.context_resolver.resolve(
            questions,
            row.row_index + 1,
            instructions=job.rfp_instructions,
            documents=documents,
        )
        contextual = resolution.full_contextual_question or question
        async with self.registry.commit_lock(job.id):
            if self.registry.is_active(job.id, token):
                await self.store.update_row(row.id, full_contextual_question=contextual)
        return contextual

    async def _process_row(
        self,
        job: Job,
        pipeline: Pipeline,
        row: CsvRow,
        questions: list[str],
        documents: list[LoadedDocument],
        token: int,
    ) -> RowContext | None:
        """Run every step for one row. None when the row was abandoned."""
        context = RowContext(
            row_index=row.row_index,
            original_data=row.original_data,
            question=questions[row.row_index],
            contextual_question=await self._contextual_question(job, row, questions, documents, token),
            instructions=job.rfp_instructions,
            documents=documents,
        )

        for step_index, step in enumerate(pipeline.steps):
            if self._should_stop(job.id, token):
                logger.info(f"Abandoning row {row.row_index} of job {job.id} before step '{step.name}'")
                return None
            await self._run_step(job, step, step_index, context, token)
        return context

    async def _run_step(
        self, job: Job, step: StepConfig, step_index: int, context: RowContext, token: int
    ) -> None:
        async with self.registry.commit_lock(job.id):
            if not self.registry.is_active(job.id, token):
                return
            record = await self.store.add_step_record(
                JobStepRecord(
                    id=new_id(),
                    job_id=job.id,
                    row_index=context.row_index,
                    step_index=step_index,
                    step_name=step.name,
                    status=StepStatus.RUNNING,
                    input_data={
                        "question": context.contextual_question,
                        "model": step.model,
                        "previous_outputs": {o.step_name: o.text[:1000] for o in context.outputs},
                    },
                )
            )
        log_service.log_job_step(job.id, context.row_index, step.name, "running")

        t0 = time.monotonic()
        try:
            text, strategy = await self.executor.execute(step, context, job_id=job.id)
        except Exception as exc:
            failure = exc if isinstance(exc, StepFailure) else StepFailure(step.name, str(exc) or type(exc).__name__)
            await self._finish_step_record(
                job.id,
                token,
                record.id,
                status=StepStatus.ERROR,
                error_message=failure.message,
                latency_ms=int((time.monotonic() - t0) * 1000),
                completed_at=utcnow(),
            )
            log_service.log_job_step(job.id, context.row_index, step.name, "error", {"error": failure.message})
            if failure is exc:
                raise
            raise failure from exc

        latency_ms = int((time.monotonic() - t0) * 1000)
        context.add_output(step.name, text, strategy.value)
        recorded = await self._finish_step_record(
            job.id,
            token,
            record.id,
            status=StepStatus.COMPLETED,
            output_data={"text": text, "strategy": strategy.value},
            latency_ms=latency_ms,
            completed_at=utcnow(),
        )
        if not recorded:
            return
        log_service.log_job_step(job.id, context.row_index, step.name, "completed", {"latency_ms": latency_ms})
        await self.notifier.publish(
            streaming.step_completed(job.id, context.row_index, step.name, latency_ms)
        )

    async def _finish_step_record(self, job_id: str, token: int, record_id: str, **fields: Any) -> bool:
        """Skipped once the run lost ownership, since a reset may have deleted the record."""
        async with self.registry.commit_lock(job_id):
            if not self.registry.is_active(job_id, token):
                return False
            await self.store.update_step_record(record_id, **fields)
            return True

    # --- Feedback ---

    async def start_feedback_reprocessing(
        self, job_id: str, row_indices: list[int] | None = None
    ) -> FeedbackSummary:
        """Regenerate the tailored answer of every row flagged for reprocessing.

        A failing row keeps its previous answer. Its flag is cleared either way.
        """
        if self.feedback is None:
            raise RuntimeError("Feedback reprocessing is not configured")
        token = await self.registry.acquire(job_id)
        try:
            job = await self._require_job(job_id)
            pipeline = await self._require_pipeline(job)
            tailor_step, research_step, draft_step = _feedback_steps(pipeline)
            wanted = set(row_indices) if row_indices is not None else None
            rows = [
                row
                for row in await self.store.get_rows(job_id)
                if row.needs_reprocessing
                and (row.feedback or "").strip()
                and (wanted is None or row.row_index in wanted)
            ]
            documents = await load_additional_documents(job.additional_documents) if job.additional_documents else []

            summary = FeedbackSummary(job_id=job_id)
            for row in rows:
                success = False
                try:
                    await self.feedback.reprocess_row(
                        row,
                        tailor_step=tailor_step,
                        research_step=research_step,
                        draft_step=draft_step,
                        instructions=job.rfp_instructions,
                        documents=documents,
                    )
                    success = True
                except Exception as exc:
                    logger.warning(f"Feedback reprocessing failed for job {job_id} row {row.row_index}: {exc}")
                    summary.failed_rows.append(row.row_index)
                finally:
                    await self.store.update_row(row.id, needs_reprocessing=False)
                summary.processed += 1
                summary.succeeded += int(success)
                await self.notifier.publish(streaming.feedback_processed(job_id, row.row_index, success))
            logger.info(f"Feedback reprocessing for job {job_id}: {summary.succeeded}/{summary.processed} rows")
            return summary
        finally:
            await self.registry.release(job_id, token)


def _feedback_steps(pipeline: Pipeline) -> tuple[StepConfig, StepConfig | None, StepConfig | None]:
    if not pipeline.steps:
        raise StepFailure("feedback", "Pipeline has no steps")
    by_strategy: dict[StepStrategy, StepConfig] = {}
    for step in pipeline.steps:
        by_strategy.setdefault(resolve_strategy(step), step)
    tailor = by_strategy.get(StepStrategy.TAILOR) or pipeline.steps[-1]
    return tailor, by_strategy.get(StepStrategy.RESEARCH), by_strategy.get(StepStrategy.DRAFT)


def build_orchestrator(
    *,
    store: Store | None = None,
    llm: CompletionClient | None = None,
    embedder: EmbeddingService | None = None,
    notifier: Any | None = None,
    ingestor: ReferenceIngestor | None = None,
    resolve_context: bool = True,
) -> JobOrchestrator:
    """Wire the default agents around one store, completion client and embedder."""
    store = store or get_store()
    llm = llm or llm_client()
    embedder = embedder or get_embedding_service()
    notifier = notifier or NullNotifier()
    ingestor = ingestor or ReferenceIngestor(store, embedder, notifier=notifier)

    executor = StepExecutor(
        {
            StepStrategy.RESEARCH: ResearchAgent(
                llm, store, embedder, ReferenceCache(store, embedder), ingestor, notifier=notifier
            ),
            StepStrategy.DRAFT: DraftAgent(llm, store, embedder, ResponseCache(store, embedder), notifier=notifier),
            StepStrategy.TAILOR: TailorAgent(llm, notifier=notifier),
            StepStrategy.PROMPT: PromptAgent(llm, notifier=notifier),
        }
    )
    return JobOrchestrator(
        store,
        executor,
        notifier=notifier,
        context_resolver=ContextResolver(llm) if resolve_context else None,
        feedback=FeedbackReprocessor(llm, store, embedder),
    )

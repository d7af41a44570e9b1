from __future__ import annotations

import json

import pytest

from rfpflow.agents import research_agent
from rfpflow.agents.feedback_agent import FeedbackReprocessor, combine_references, parse_reference_list
from rfpflow.agents.orchestrator import build_orchestrator, create_job
from rfpflow.models.cache import LinkStatus, ReferenceChunkEntry
from rfpflow.models.events import EventType
from rfpflow.models.jobs import CsvRow, JobStatus, StepConfig
from rfpflow.services.link_validator import ValidationResult
from rfpflow.services.notifier import EventBus
from rfpflow.services.pipelines import default_pipeline
from tests.fakes import FakeLLM

QUESTION = "Do you support single sign-on with SAML?"
SSO_URL = "https://docs.example.com/sso"
MFA_URL = "https://docs.example.com/mfa"


async def _index(store, embedder, url: str, text: str) -> None:
    await store.add_chunks(
        [
            ReferenceChunkEntry(
                id=url,
                content_hash=url,
                chunk_index=0,
                chunk_text=text,
                embedding=await embedder.embed_text(text),
                url=url,
                metadata={"title": url.rsplit("/", 1)[-1]},
            )
        ]
    )


def _responder(system_prompt, user_prompt, params):
    if "revising a submission-ready answer" in system_prompt:
        return "Revised answer"
    if "generic, comprehensive draft" in system_prompt:
        return "Generic draft"
    return "Final answer"


def test_parse_reference_list_shapes():
    assert parse_reference_list("") == []
    assert parse_reference_list(json.dumps([SSO_URL, {"url": MFA_URL}])) == [SSO_URL, MFA_URL]
    assert parse_reference_list(json.dumps({"references": [SSO_URL]})) == [SSO_URL]
    assert parse_reference_list(f"See {SSO_URL}.") == [SSO_URL]
    assert parse_reference_list("42") == []


def test_combine_references_keeps_existing_first_and_dedupes():
    merged = combine_references(json.dumps([SSO_URL]), ["https://Docs.Example.com/sso/", MFA_URL])
    assert merged == [SSO_URL, MFA_URL]


@pytest.mark.asyncio
async def test_reprocess_row_merges_references_and_rewrites_tailored_column(store, embedder):
    await _index(store, embedder, MFA_URL, "multi-factor authentication is enforced for SAML sign-on")
    llm = FakeLLM(lambda s, u, p: "Revised answer")
    row = CsvRow(
        id="row-1",
        job_id="job-1",
        row_index=0,
        original_data={"Question": QUESTION},
        enriched_data={
            "Question": QUESTION,
            "Research": json.dumps([SSO_URL]),
            "Draft": "Generic draft",
            "Tailored": "Old answer",
        },
        feedback="Mention multi-factor authentication",
        needs_reprocessing=True,
    )
    await store.add_rows([row])
    reprocessor = FeedbackReprocessor(llm, store, embedder, top_k=3, model="")

    text = await reprocessor.reprocess_row(
        row,
        tailor_step=StepConfig(name="Tailored", model="o3-mini"),
        research_step=StepConfig(name="Research", model="gpt-4o"),
        draft_step=StepConfig(name="Draft", model="gpt-4o"),
    )

    assert text == "Revised answer"
    _, user_prompt, params = llm.calls[0]
    assert "Mention multi-factor authentication" in user_prompt
    assert "Old answer" in user_prompt
    assert "Generic draft" in user_prompt
    assert params.model == "o3-mini"
    stored = (await store.get_rows("job-1"))[0]
    assert stored.enriched_data["Tailored"] == "Revised answer"
    assert json.loads(stored.enriched_data["Research"]) == [SSO_URL, MFA_URL]


async def _completed_job(store, embedder, monkeypatch, llm, bus):
    async def all_valid(urls):
        return [ValidationResult(url=url, status=LinkStatus.VALID, status_code=200) for url in urls]

    monkeypatch.setattr(research_agent, "validate_urls", all_valid)
    await _index(store, embedder, SSO_URL, QUESTION)
    pipeline = await store.save_pipeline(default_pipeline("default"))
    job = await create_job(
        store,
        user_id="user-1",
        pipeline_id=pipeline.id,
        records=[{"Question": QUESTION}],
        rfp_instructions="Keep it short.",
    )
    orchestrator = build_orchestrator(store=store, llm=llm, embedder=embedder, notifier=bus, resolve_context=False)
    result = await orchestrator.start_job(job.id)
    return orchestrator, result


@pytest.mark.asyncio
async def test_default_pipeline_runs_end_to_end(store, embedder, monkeypatch):
    llm = FakeLLM(_responder)
    orchestrator, job = await _completed_job(store, embedder, monkeypatch, llm, EventBus())

    assert job.status == JobStatus.COMPLETED
    row = (await store.get_rows(job.id))[0]
    assert json.loads(row.enriched_data["Reference Research"]) == [SSO_URL]
    assert row.enriched_data["Generic Draft Generation"] == "Generic draft"
    assert row.enriched_data["Tailored RFP Response"] == "Final answer"
    assert len(llm.calls) == 2
    assert llm.calls[1][2].model == "o3-mini"
    assert "Keep it short." in llm.calls[1][1]
    assert len(store.reference_entries) == 1
    assert len(store.response_entries) == 1


@pytest.mark.asyncio
async def test_feedback_reprocessing_updates_flagged_rows(store, embedder, monkeypatch):
    bus = EventBus()
    orchestrator, job = await _completed_job(store, embedder, monkeypatch, FakeLLM(_responder), bus)
    row = (await store.get_rows(job.id))[0]
    await store.update_row(row.id, feedback="Add more detail", needs_reprocessing=True)

    summary = await orchestrator.start_feedback_reprocessing(job.id)

    assert (summary.processed, summary.succeeded, summary.failed_rows) == (1, 1, [])
    updated = (await store.get_rows(job.id))[0]
    assert updated.enriched_data["Tailored RFP Response"] == "Revised answer"
    assert not updated.needs_reprocessing
    assert bus.events_of(EventType.FEEDBACK_PROCESSED)[0].data["success"] is True


@pytest.mark.asyncio
async def test_failed_feedback_keeps_answer_and_clears_flag(store, embedder, monkeypatch):
    def responder(system_prompt, user_prompt, params):
        if "revising a submission-ready answer" in system_prompt:
            raise RuntimeError("rate limited")
        return _responder(system_prompt, user_prompt, params)

    bus = EventBus()
    orchestrator, job = await _completed_job(store, embedder, monkeypatch, FakeLLM(responder), bus)
    row = (await store.get_rows(job.id))[0]
    await store.update_row(row.id, feedback="Add more detail", needs_reprocessing=True)

    summary = await orchestrator.start_feedback_reprocessing(job.id)

    assert summary.failed_rows == [0]
    assert summary.succeeded == 0
    updated = (await store.get_rows(job.id))[0]
    assert updated.enriched_data["Tailored RFP Response"] == "Final answer"
    assert not updated.needs_reprocessing
    assert bus.events_of(EventType.FEEDBACK_PROCESSED)[0].data["success"] is False


@pytest.mark.asyncio
async def test_rows_without_feedback_are_left_alone(store, embedder, monkeypatch):
    llm = FakeLLM(_responder)
    orchestrator, job = await _completed_job(store, embedder, monkeypatch, llm, EventBus())
    calls_before = len(llm.calls)

    summary = await orchestrator.start_feedback_reprocessing(job.id)

    assert summary.processed == 0
    assert len(llm.calls) == calls_before

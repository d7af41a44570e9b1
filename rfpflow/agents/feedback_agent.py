from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from rfpflow.agents.base import format_additional_documents
from rfpflow.agents.context_resolver import extract_question_text
from rfpflow.config import settings
from rfpflow.errors import StepFailure
from rfpflow.llm_client import CompletionClient, ModelParams
from rfpflow.models.jobs import CsvRow, LoadedDocument, StepConfig
from rfpflow.services.embeddings import EmbeddingService
from rfpflow.services.link_validator import extract_urls
from rfpflow.services.prompt_store import render_prompt
from rfpflow.services.semantic_cache import semantic_search, unique_urls
from rfpflow.services.store import Store
from rfpflow.services.url_normalizer import normalize_url


def parse_reference_list(text: str) -> list[str]:
    """URLs from a stored research column: a JSON list, else any URLs in the text."""
    if not text or not text.strip():
        return []
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError:
        return extract_urls(text)
    if isinstance(data, dict):
        data = data.get("references") or []
    if not isinstance(data, list):
        return extract_urls(text)
    urls: list[str] = []
    for item in data:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict) and isinstance(item.get("url"), str):
            urls.append(item["url"])
    return urls


def combine_references(existing: str, additional: list[str]) -> list[str]:
    """Order-preserving union: existing references first, duplicates removed."""
    merged: list[str] = []
    seen: set[str] = set()
    for url in [*parse_reference_list(existing), *additional]:
        key = normalize_url(url)
        if key and key not in seen:
            seen.add(key)
            merged.append(url)
    return merged


@dataclass(slots=True)
class FeedbackSummary:
    job_id: str
    processed: int = 0
    succeeded: int = 0
    failed_rows: list[int] = field(default_factory=list)


class FeedbackReprocessor:
    """Regenerates only the tailored answer for a row using reviewer feedback."""

    def __init__(
        self,
        llm: CompletionClient,
        store: Store,
        embedder: EmbeddingService,
        *,
        top_k: int | None = None,
        model: str | None = None,
    ):
        self.llm = llm
        self.store = store
        self.embedder = embedder
        self.top_k = int(top_k or settings.feedback_top_k)
        self.model = model if model is not None else settings.feedback_model

    async def find_additional_references(self, question: str, feedback: str) -> list[str]:
        hits = await semantic_search(
            self.store,
            self.embedder,
            f"{question} {feedback}".strip(),
            top_k=self.top_k,
        )
        return unique_urls(hits)

    async def reprocess_row(
        self,
        row: CsvRow,
        *,
        tailor_step: StepConfig,
        research_step: StepConfig | None = None,
        draft_step: StepConfig | None = None,
        instructions: str | None = None,
        documents: list[LoadedDocument] | None = None,
    ) -> str:
        """Writes the regenerated answer and merged references onto the row."""
        enriched = dict(row.enriched_data or row.original_data)
        question = row.full_contextual_question or extract_question_text(row.original_data)
        feedback = (row.feedback or "").strip()

        existing_refs = str(enriched.get(research_step.name, "")) if research_step else ""
        additional = await self.find_additional_references(question, feedback)
        merged = combine_references(existing_refs, additional)
        logger.info(
            f"Feedback for row {row.row_index}: {len(additional)} additional references, "
            f"{len(merged)} after merge"
        )
        references_text = json.dumps(merged, indent=2)

        user_prompt = render_prompt(
            "feedback.user",
            question=question,
            feedback=feedback,
            draft=str(enriched.get(draft_step.name, "")) if draft_step else "",
            current_response=str(enriched.get(tailor_step.name, "")),
            references=references_text,
            instructions=instructions or "No specific instructions provided.",
            documents=format_additional_documents(documents or []),
        )
        params = ModelParams(
            model=self.model or tailor_step.model or settings.default_model,
            temperature=tailor_step.temperature,
            max_tokens=tailor_step.max_tokens,
        )
        try:
            text = await self.llm.complete(render_prompt("feedback.system"), user_prompt, params)
        except StepFailure:
            raise
        except Exception as exc:
            raise StepFailure(tailor_step.name, str(exc) or type(exc).__name__) from exc

        if research_step is not None:
            enriched[research_step.name] = references_text
        enriched[tailor_step.name] = text
        await self.store.update_row(row.id, enriched_data=enriched)
        return text

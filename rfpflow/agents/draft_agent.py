from __future__ import annotations

from typing import Any

from rfpflow.agents.base import BaseStepAgent
from rfpflow.config import settings
from rfpflow.llm_client import CompletionClient
from rfpflow.models.cache import SearchHit
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy
from rfpflow.services.embeddings import EmbeddingService
from rfpflow.services.prompt_store import render_prompt
from rfpflow.services.semantic_cache import ResponseCache, semantic_search
from rfpflow.services.store import Store

DEFAULT_DRAFT_PROMPT = "Question: $question\n\nReferences:\n$references"


def format_excerpts(hits: list[SearchHit]) -> str:
    if not hits:
        return render_prompt("draft.no_references")
    blocks = [render_prompt("draft.references_header")]
    for i, hit in enumerate(hits, start=1):
        title = hit.chunk.metadata.get("title") or hit.chunk.source
        blocks.append(
            f"[{i}] **{title}**\nSource: {hit.chunk.source}\n"
            f"Similarity: {hit.similarity:.2f}\n{hit.chunk.chunk_text.strip()}"
        )
    return "\n\n".join(blocks)


class DraftAgent(BaseStepAgent):
    """Synthesizes a generic answer from the top-K matching reference chunks."""

    name = "draft"
    strategy = StepStrategy.DRAFT

    def __init__(
        self,
        llm: CompletionClient,
        store: Store,
        embedder: EmbeddingService,
        response_cache: ResponseCache,
        *,
        notifier: Any | None = None,
        top_k: int | None = None,
    ):
        super().__init__(llm, notifier=notifier)
        self.store = store
        self.embedder = embedder
        self.response_cache = response_cache
        self.top_k = int(top_k or settings.draft_top_k)

    async def run(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> str:
        question = row.contextual_question or row.question
        references = row.output_by_strategy(StepStrategy.RESEARCH.value) or ""
        use_cache = not step.has_tool("no_cache")

        if use_cache:
            match = await self.response_cache.lookup(question, references)
            if match is not None:
                await self.log(job_id, f"Reusing cached draft ({match.similarity:.2f})")
                return match.entry.generated_response

        hits = await semantic_search(self.store, self.embedder, question, top_k=self.top_k)
        await self.log(job_id, f"Drafting from {len(hits)} reference excerpts")
        reference_block = "\n\n".join(part for part in (references, format_excerpts(hits)) if part)
        variables = self.variables(row, references=reference_block)
        user_prompt = self.render(step, step.user_prompt or DEFAULT_DRAFT_PROMPT, variables)
        system_prompt = self.render(step, step.system_prompt, variables)

        text = await self.complete(step, system_prompt, user_prompt)
        if use_cache:
            await self.response_cache.store(
                question,
                references,
                text,
                metadata={
                    "model": step.model,
                    "excerpts": len(hits),
                    "estimated_tokens": len(text) // 4,
                },
            )
        return text

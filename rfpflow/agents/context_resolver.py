from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from rfpflow.agents.base import format_additional_documents
from rfpflow.config import settings
from rfpflow.llm_client import CompletionClient, ModelParams
from rfpflow.models.jobs import AuxiliaryDocument, LoadedDocument
from rfpflow.services.document_extractor import extract_document
from rfpflow.services.prompt_store import render_prompt

QUESTION_FIELDS = (
    "QUESTION TITLE",
    "Question",
    "question",
    "QUESTION",
    "Question Title",
    "RFP Question",
    "Query",
)


def extract_question_text(row: dict[str, Any]) -> str:
    """The row's question column, else the first substantial text value."""
    for key in QUESTION_FIELDS:
        value = row.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    for value in row.values():
        if isinstance(value, str) and len(value.strip()) > 10:
            return value.strip()
    return ""


@dataclass(slots=True)
class ContextResolution:
    full_contextual_question: str
    has_references: bool = False
    referenced_questions: list[int] = field(default_factory=list)
    reasoning: str = ""


class ContextResolver:
    """Rewrites questions that lean on earlier rows into standalone questions."""

    def __init__(self, llm: CompletionClient, *, model: str | None = None):
        self.llm = llm
        self.model = model or settings.default_model

    async def resolve(
        self,
        questions: list[str],
        row_number: int,
        *,
        instructions: str | None = None,
        documents: list[LoadedDocument] | None = None,
    ) -> ContextResolution:
        """``row_number`` is 1-based. Any failure falls back to the raw question."""
        if row_number < 1 or row_number > len(questions):
            raise IndexError(f"Question {row_number} not found")
        question = questions[row_number - 1]
        if row_number == 1 or not question.strip():
            return ContextResolution(
                full_contextual_question=question,
                reasoning="First question requires no additional context",
            )

        previous = "\n".join(f"{i}. {q}" for i, q in enumerate(questions[: row_number - 1], start=1))
        user_prompt = render_prompt(
            "context.user",
            questions=previous,
            row_number=row_number,
            question=question,
            instructions=instructions or "None",
            documents=format_additional_documents(documents or []),
        )
        try:
            text = await self.llm.complete(
                render_prompt("context.system"),
                user_prompt,
                ModelParams(model=self.model, temperature=0.1, max_tokens=1000, json_output=True),
            )
            payload = json.loads(text)
            resolved = payload.get("fullContextualQuestion")
            has_references = payload.get("hasReferences")
            if not isinstance(resolved, str) or not resolved.strip() or not isinstance(has_references, bool):
                raise ValueError("Invalid context resolution payload")
        except Exception as exc:
            logger.warning(f"Context resolution failed for question {row_number}: {exc}")
            return ContextResolution(
                full_contextual_question=question,
                reasoning=f"Context resolution failed: {exc}",
            )

        referenced = payload.get("referencedQuestions")
        return ContextResolution(
            full_contextual_question=resolved.strip(),
            has_references=has_references,
            referenced_questions=[int(n) for n in referenced if isinstance(n, int)]
            if isinstance(referenced, list)
            else [],
            reasoning=str(payload.get("reasoning") or "No reasoning provided"),
        )


async def load_additional_documents(
    documents: list[AuxiliaryDocument],
    *,
    max_chars: int | None = None,
) -> list[LoadedDocument]:
    limit = int(max_chars or settings.document_max_chars)
    loaded: list[LoadedDocument] = []
    for document in documents:
        try:
            extracted = await extract_document(document.path, document.name)
            content = extracted.text[:limit]
        except OSError as exc:
            logger.warning(f"Failed to load document {document.name}: {exc}")
            content = f"[Error loading document: {document.name}]"
        loaded.append(LoadedDocument(name=document.name, content=content))
    return loaded

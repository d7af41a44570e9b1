from __future__ import annotations

from typing import Any

from rfpflow.config import settings
from rfpflow.errors import StepFailure
from rfpflow.llm_client import CompletionClient, ModelParams
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy
from rfpflow.services import streaming
from rfpflow.services.notifier import NullNotifier
from rfpflow.services.prompt_store import StepVariables, render_step_template


def format_additional_documents(documents: list[Any]) -> str:
    if not documents:
        return "No additional documents provided."
    return "\n\n".join(
        f"**Document {i}: {doc.name}**\n{doc.content}" for i, doc in enumerate(documents, start=1)
    )


class BaseStepAgent:
    """One pipeline strategy: (question, prior outputs, side context) -> text.

    Subclasses implement `run`. Provider and template errors are raised as
    StepFailure so the orchestrator can abort the row.
    """

    name: str = "base"
    strategy: StepStrategy = StepStrategy.PROMPT

    def __init__(self, llm: CompletionClient, *, notifier: Any | None = None):
        self.llm = llm
        self.notifier = notifier or NullNotifier()

    async def run(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> str:
        raise NotImplementedError(f"{type(self).__name__} does not implement run()")

    def variables(self, row: RowContext, **overrides: str) -> StepVariables:
        references = row.output_by_strategy(StepStrategy.RESEARCH.value) or ""
        draft = row.output_by_strategy(StepStrategy.DRAFT.value) or ""
        values = StepVariables(
            question=row.contextual_question or row.question,
            references=references,
            draft=draft,
            instructions=row.instructions or "No specific instructions provided.",
            documents=format_additional_documents(row.documents),
        )
        for key, value in overrides.items():
            setattr(values, key, value)
        return values

    def render(self, step: StepConfig, template: str, variables: StepVariables) -> str:
        try:
            return render_step_template(template, variables)
        except (KeyError, ValueError) as exc:
            raise StepFailure(step.name, f"Invalid prompt template: {exc}") from exc

    async def complete(
        self,
        step: StepConfig,
        system_prompt: str,
        user_prompt: str,
        *,
        json_output: bool = False,
        model: str | None = None,
    ) -> str:
        params = ModelParams(
            model=model or step.model or settings.default_model,
            temperature=step.temperature,
            max_tokens=step.max_tokens,
            json_output=json_output,
        )
        try:
            return await self.llm.complete(system_prompt, user_prompt, params)
        except StepFailure as exc:
            raise StepFailure(step.name, exc.message) from exc
        except Exception as exc:
            raise StepFailure(step.name, str(exc) or type(exc).__name__) from exc

    async def log(self, job_id: str, message: str, **kwargs: Any) -> None:
        await self.notifier.publish(streaming.processing_log(self.name, message, job_id=job_id, **kwargs))

from __future__ import annotations

from rfpflow.agents.base import BaseStepAgent
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy

DEFAULT_TAILOR_PROMPT = (
    "Question: $question\n\nReferences: $references\n\nDraft: $draft\n\n"
    "Instructions: $instructions\n\nDocuments:\n$documents"
)


class TailorAgent(BaseStepAgent):
    """Final audience-specific answer. Never served from or written to a cache."""

    name = "tailor"
    strategy = StepStrategy.TAILOR

    async def run(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> str:
        variables = self.variables(row)
        if not variables.draft:
            variables.draft = row.previous_output() or ""
        user_prompt = self.render(step, step.user_prompt or DEFAULT_TAILOR_PROMPT, variables)
        system_prompt = self.render(step, step.system_prompt, variables)
        await self.log(job_id, f"Tailoring response with {len(row.documents)} additional documents")
        return await self.complete(step, system_prompt, user_prompt)

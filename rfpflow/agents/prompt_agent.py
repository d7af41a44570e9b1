from __future__ import annotations

from rfpflow.agents.base import BaseStepAgent
from rfpflow.errors import StepFailure
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy


class PromptAgent(BaseStepAgent):
    """Fallback for custom steps: render the step's own templates and complete."""

    name = "prompt"
    strategy = StepStrategy.PROMPT

    async def run(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> str:
        if not step.user_prompt.strip():
            raise StepFailure(step.name, "Step has no user prompt configured")
        variables = self.variables(row)
        if not variables.draft:
            variables.draft = row.previous_output() or ""
        return await self.complete(
            step,
            self.render(step, step.system_prompt, variables),
            self.render(step, step.user_prompt, variables),
        )

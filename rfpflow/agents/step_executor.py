from __future__ import annotations

from rfpflow.agents.base import BaseStepAgent
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy

_NAME_HINTS: tuple[tuple[StepStrategy, tuple[str, ...]], ...] = (
    (StepStrategy.RESEARCH, ("research", "reference")),
    (StepStrategy.DRAFT, ("draft", "generic")),
    (StepStrategy.TAILOR, ("tailor", "response", "final")),
)


def resolve_strategy(step: StepConfig) -> StepStrategy:
    """Explicit strategy wins; otherwise infer from the step name."""
    if step.strategy is not None:
        return StepStrategy(step.strategy)
    lowered = step.name.lower()
    for strategy, hints in _NAME_HINTS:
        if any(hint in lowered for hint in hints):
            return strategy
    return StepStrategy.PROMPT


class StepExecutor:
    def __init__(self, agents: dict[StepStrategy, BaseStepAgent]):
        if StepStrategy.PROMPT not in agents:
            raise ValueError("StepExecutor needs a PROMPT agent as fallback")
        self.agents = agents

    def agent_for(self, step: StepConfig) -> BaseStepAgent:
        strategy = resolve_strategy(step)
        return self.agents.get(strategy) or self.agents[StepStrategy.PROMPT]

    async def execute(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> tuple[str, StepStrategy]:
        agent = self.agent_for(step)
        text = await agent.run(step, row, job_id=job_id)
        return text, agent.strategy

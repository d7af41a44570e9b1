from __future__ import annotations

from typing import Any

from rfpflow.config import settings
from rfpflow.models.jobs import Pipeline, StepConfig, StepStrategy, new_id
from rfpflow.services.prompt_store import load_default_pipeline_config


def step_from_config(payload: dict[str, Any]) -> StepConfig:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("Pipeline step is missing a name.")
    strategy = payload.get("strategy")
    return StepConfig(
        name=name,
        model=str(payload.get("model") or settings.default_model),
        temperature=float(payload.get("temperature", 0.3)),
        max_tokens=int(payload.get("max_tokens", 2000)),
        system_prompt=str(payload.get("system_prompt") or ""),
        user_prompt=str(payload.get("user_prompt") or ""),
        tools=[str(tool) for tool in payload.get("tools") or []],
        strategy=StepStrategy(strategy) if strategy else None,
    )


def pipeline_from_config(payload: dict[str, Any], pipeline_id: str | None = None) -> Pipeline:
    steps = [step_from_config(step) for step in payload.get("steps") or []]
    names = [step.name for step in steps]
    if len(set(names)) != len(names):
        raise ValueError("Pipeline step names must be unique.")
    return Pipeline(
        id=pipeline_id or str(payload.get("id") or new_id()),
        name=str(payload.get("name") or "Pipeline"),
        steps=steps,
        description=str(payload.get("description") or ""),
    )


def default_pipeline(pipeline_id: str | None = None) -> Pipeline:
    """The bundled research / draft / tailor pipeline."""
    return pipeline_from_config(load_default_pipeline_config(), pipeline_id)

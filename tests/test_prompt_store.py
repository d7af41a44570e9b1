from __future__ import annotations

import pytest

from rfpflow.models.jobs import StepStrategy
from rfpflow.services import prompt_store
from rfpflow.services.pipelines import default_pipeline, pipeline_from_config
from rfpflow.services.prompt_store import (
    StepVariables,
    clear_prompt_cache,
    render_prompt,
    render_step_template,
    template_placeholders,
)


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "research.discovery_user",
        question="Do you support SSO?",
        allowed_domains="example.com",
    )
    assert "Do you support SSO?" in prompt
    assert "Allowed domains: example.com" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_reports_missing_values():
    with pytest.raises(KeyError, match="allowed_domains"):
        render_prompt("research.discovery_user", question="q")


def test_render_step_template_uses_fixed_variable_set():
    text = render_step_template(
        "Q: $question\nRefs: ${references}\nCost: $$5",
        StepVariables(question="Do you encrypt data?", references="https://a.example.com"),
    )
    assert text == "Q: Do you encrypt data?\nRefs: https://a.example.com\nCost: $5"


def test_render_step_template_rejects_unknown_variables():
    with pytest.raises(KeyError, match="company_name"):
        render_step_template("Hello $company_name about $question", StepVariables(question="q"))


def test_template_placeholders_rejects_invalid_syntax():
    assert template_placeholders("$question and ${draft}") == {"question", "draft"}
    with pytest.raises(ValueError):
        template_placeholders("price is $ 5")


def test_default_pipeline_has_research_draft_and_tailor_steps():
    pipeline = default_pipeline("pipe-1")

    assert pipeline.id == "pipe-1"
    assert [step.strategy for step in pipeline.steps] == [
        StepStrategy.RESEARCH,
        StepStrategy.DRAFT,
        StepStrategy.TAILOR,
    ]
    assert pipeline.steps[2].has_tool("no_cache")
    for step in pipeline.steps:
        assert template_placeholders(step.user_prompt) <= {
            "question",
            "references",
            "draft",
            "instructions",
            "documents",
            "feedback",
        }


def test_pipeline_step_names_must_be_unique():
    payload = {"steps": [{"name": "Draft", "model": "gpt-4o"}, {"name": "Draft", "model": "gpt-4o"}]}
    with pytest.raises(ValueError):
        pipeline_from_config(payload)


def test_catalog_is_reloaded_from_its_path(tmp_path, monkeypatch):
    catalog = tmp_path / "prompts.json"
    catalog.write_text('{"greeting": {"user": "Hello $name"}}', encoding="utf-8")
    monkeypatch.setattr(prompt_store, "PROMPTS_PATH", catalog)
    clear_prompt_cache()
    try:
        assert render_prompt("greeting.user", name="reviewer") == "Hello reviewer"
        with pytest.raises(TypeError):
            render_prompt("greeting")
    finally:
        clear_prompt_cache()

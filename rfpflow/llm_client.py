"""Completion adapter over the OpenAI-compatible chat completions API."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

from rfpflow.config import settings
from rfpflow.errors import StepFailure
from rfpflow.services import logger as log_service


@dataclass
class ModelParams:
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    json_output: bool = False
    reasoning_effort: str = "medium"


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionClient(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str, params: ModelParams) -> str: ...


def _is_reasoning_model(model: str) -> bool:
    lowered = (model or "").lower().split("/")[-1]
    return lowered.startswith(("o1", "o3", "o4", "gpt-5"))


def build_request(system_prompt: str, user_prompt: str, params: ModelParams) -> dict[str, Any]:
    """Translate generic params into the provider's per-model request fields."""
    model = params.model
    lowered = (model or "").lower()
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
    }

    if _is_reasoning_model(model):
        # Reasoning models reject max_tokens and any non-default temperature.
        if params.max_tokens:
            kwargs["max_completion_tokens"] = params.max_tokens
        if "gpt-5" in lowered:
            kwargs["reasoning_effort"] = params.reasoning_effort
    else:
        if params.max_tokens:
            kwargs["max_tokens"] = params.max_tokens
        if params.temperature is not None and "search-preview" not in lowered:
            kwargs["temperature"] = params.temperature

    if params.json_output:
        kwargs["response_format"] = {"type": "json_object"}
    return kwargs


class LLMClient:
    def __init__(self, openai_client: Any | None = None, caller: str = "pipeline"):
        self._client = openai_client
        self.caller = caller
        self.last_usage = Usage()

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": settings.openai_api_key}
            if settings.openai_base_url.strip():
                kwargs["base_url"] = settings.openai_base_url.strip()
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def complete(self, system_prompt: str, user_prompt: str, params: ModelParams) -> str:
        kwargs = build_request(system_prompt, user_prompt, params)
        t0 = time.monotonic()
        try:
            response = await self._get_client().chat.completions.create(**kwargs)
        except Exception as exc:
            log_service.log_llm_call(
                model=params.model,
                caller=self.caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        usage = getattr(response, "usage", None)
        self.last_usage = Usage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        log_service.log_llm_call(
            model=params.model,
            caller=self.caller,
            input_tokens=self.last_usage.input_tokens,
            output_tokens=self.last_usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

        choices = getattr(response, "choices", None) or []
        text = getattr(choices[0].message, "content", None) if choices else None
        if not text or not text.strip():
            raise StepFailure(self.caller, f"Empty completion from model {params.model}")
        return text.strip()


_client: LLMClient | None = None


def client() -> LLMClient:
    """Get or create the shared completion client."""
    global _client
    if _client is None:
        _client = LLMClient()
    return _client

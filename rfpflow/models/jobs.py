from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class JobStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class StepStrategy(StrEnum):
    RESEARCH = "research"
    DRAFT = "draft"
    TAILOR = "tailor"
    PROMPT = "prompt"


@dataclass(slots=True)
class StepConfig:
    name: str
    model: str
    temperature: float = 0.3
    max_tokens: int = 2000
    system_prompt: str = ""
    user_prompt: str = ""
    tools: list[str] = field(default_factory=list)
    strategy: StepStrategy | None = None

    def has_tool(self, tool: str) -> bool:
        return tool in self.tools


@dataclass(slots=True)
class Pipeline:
    id: str
    name: str
    steps: list[StepConfig] = field(default_factory=list)
    description: str = ""


@dataclass(slots=True)
class Job:
    id: str
    user_id: str
    pipeline_id: str | None
    total_rows: int
    name: str = ""
    status: JobStatus = JobStatus.NOT_STARTED
    processed_rows: int = 0
    progress: int = 0
    error_message: str | None = None
    rfp_instructions: str | None = None
    additional_documents: list[AuxiliaryDocument] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class AuxiliaryDocument:
    name: str
    path: str
    mime_type: str = ""
    size: int = 0


@dataclass(slots=True)
class CsvRow:
    id: str
    job_id: str
    row_index: int
    original_data: dict[str, Any]
    enriched_data: dict[str, Any] | None = None
    full_contextual_question: str | None = None
    feedback: str | None = None
    needs_reprocessing: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class JobStepRecord:
    id: str
    job_id: str
    row_index: int
    step_index: int
    step_name: str
    status: StepStatus = StepStatus.PENDING
    input_data: dict[str, Any] = field(default_factory=dict)
    output_data: dict[str, Any] | None = None
    latency_ms: int | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None


@dataclass(slots=True)
class StepOutput:
    step_name: str
    text: str
    strategy: str | None = None


@dataclass(slots=True)
class LoadedDocument:
    name: str
    content: str


@dataclass(slots=True)
class RowContext:
    """Working record threaded through one row's steps."""

    row_index: int
    original_data: dict[str, Any]
    question: str
    contextual_question: str
    instructions: str | None = None
    documents: list[LoadedDocument] = field(default_factory=list)
    outputs: list[StepOutput] = field(default_factory=list)

    def add_output(self, step_name: str, text: str, strategy: str | None = None) -> None:
        self.outputs = [o for o in self.outputs if o.step_name != step_name]
        self.outputs.append(StepOutput(step_name=step_name, text=text, strategy=strategy))

    def output_by_strategy(self, strategy: str) -> str | None:
        for output in reversed(self.outputs):
            if output.strategy == strategy:
                return output.text
        return None

    def previous_output(self) -> str | None:
        return self.outputs[-1].text if self.outputs else None

    def enriched_data(self) -> dict[str, Any]:
        data = dict(self.original_data)
        for output in self.outputs:
            data[output.step_name] = output.text
        return data

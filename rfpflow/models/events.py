from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    JOB_STARTED = "job_started"
    ROW_PROCESSED = "row_processed"
    JOB_PAUSED = "job_paused"
    JOB_COMPLETED = "job_completed"
    JOB_ERROR = "job_error"
    JOB_RESET = "job_reset"
    JOB_CANCELLED = "job_cancelled"
    STEP_COMPLETED = "step_completed"
    FEEDBACK_PROCESSED = "feedback_processed"
    PROCESSING_LOG = "processing_log"
    PROCESSING_STATUS = "processing_status"
    PROCESSING_PROGRESS = "processing_progress"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"

"""Failure conditions raised by the job orchestrator, caches and ingestion queue."""

from __future__ import annotations


class RfpFlowError(Exception):
    """Base class for every condition raised by rfpflow."""


class NotFound(RfpFlowError):
    """A job or pipeline referenced by id does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class NoPipeline(RfpFlowError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} has no pipeline configured")


class JobAlreadyRunning(RfpFlowError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already running")


AlreadyRunning = JobAlreadyRunning


class StepFailure(RfpFlowError):
    """A step's provider call errored or returned an unusable payload."""

    def __init__(self, step_name: str, message: str):
        self.step_name = step_name
        self.message = message
        super().__init__(f"Step '{step_name}' failed: {message}")


class CacheWriteFailure(RfpFlowError):
    pass


class IngestionFailure(RfpFlowError):
    pass

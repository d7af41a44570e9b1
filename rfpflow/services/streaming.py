from __future__ import annotations

from typing import Any

from rfpflow.models.events import EventType, SSEEvent


def job_started(job_id: str, total_rows: int, processed_rows: int = 0) -> SSEEvent:
    return SSEEvent(
        event=EventType.JOB_STARTED,
        data={"job_id": job_id, "total_rows": total_rows, "processed_rows": processed_rows},
    )


def row_processed(job_id: str, row_index: int, progress: int, total_rows: int) -> SSEEvent:
    """Emit after a row's enriched data and checkpoint are persisted."""
    return SSEEvent(
        event=EventType.ROW_PROCESSED,
        data={
            "job_id": job_id,
            "row_index": row_index,
            "progress": progress,
            "total_rows": total_rows,
        },
    )


def job_paused(job_id: str, processed_rows: int, progress: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.JOB_PAUSED,
        data={"job_id": job_id, "processed_rows": processed_rows, "progress": progress},
    )


def job_completed(job_id: str, total_rows: int) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_COMPLETED, data={"job_id": job_id, "total_rows": total_rows})


def job_error(job_id: str, message: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_ERROR, data={"job_id": job_id, "message": message})


def job_reset(job_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_RESET, data={"job_id": job_id})


def job_cancelled(job_id: str) -> SSEEvent:
    return SSEEvent(event=EventType.JOB_CANCELLED, data={"job_id": job_id})


def step_completed(job_id: str, row_index: int, step_name: str, latency_ms: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.STEP_COMPLETED,
        data={
            "job_id": job_id,
            "row_index": row_index,
            "step_name": step_name,
            "latency_ms": latency_ms,
        },
    )


def feedback_processed(job_id: str, row_index: int, success: bool) -> SSEEvent:
    return SSEEvent(
        event=EventType.FEEDBACK_PROCESSED,
        data={"job_id": job_id, "row_index": row_index, "success": success},
    )


def processing_log(step: str, message: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(event=EventType.PROCESSING_LOG, data={"step": step, "message": message, **kwargs})


def processing_status(item_id: str, status: str, target: str, **kwargs: Any) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROCESSING_STATUS,
        data={"item_id": item_id, "status": status, "target": target, **kwargs},
    )


def processing_progress(item_id: str, chunks_done: int, chunks_total: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROCESSING_PROGRESS,
        data={"item_id": item_id, "chunks_done": chunks_done, "chunks_total": chunks_total},
    )

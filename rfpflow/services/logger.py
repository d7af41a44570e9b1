"""Loguru setup plus structured log lines for jobs, caches, the queue and providers."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from rfpflow.config import settings

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

if settings.log_to_file:
    LOG_DIR = Path(settings.log_dir)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.add(
        LOG_DIR / "rfpflow_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )

# Stdlib loggers of the HTTP, provider and driver stacks
for logger_name in ("httpx", "httpcore", "openai._base_client", "asyncpg", "asyncio"):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """One completion or embedding request with its token usage."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "tokens": {"input": input_tokens, "output": output_tokens, "total": input_tokens + output_tokens},
        "duration_ms": duration_ms,
        "status": status,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data} error={error}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_job_step(
    job_id: str,
    row_index: int,
    step_name: str,
    status: str,
    data: Optional[dict[str, Any]] = None,
) -> None:
    step_data = {"job_id": job_id, "row": row_index, "step": step_name, "status": status, **(data or {})}
    if status == "error":
        logger.warning(f"JOB_STEP: {step_data}")
    else:
        logger.info(f"JOB_STEP: {step_data}")


def log_cache_lookup(cache: str, hit: bool, key: str, similarity: float | None = None) -> None:
    if hit:
        logger.info(f"CACHE_HIT: cache={cache} similarity={similarity:.3f} key={key[:80]!r}")
    else:
        logger.debug(f"CACHE_MISS: cache={cache} key={key[:80]!r}")


def log_queue_item(
    item_id: str,
    target: str,
    status: str,
    chunks: int | None = None,
    error: Optional[str] = None,
) -> None:
    item_data = {"timestamp": _now(), "item_id": item_id, "target": target, "status": status, "chunks": chunks}
    if error:
        logger.warning(f"QUEUE_ITEM_FAILED: {item_data} error={error}")
    else:
        logger.info(f"QUEUE_ITEM: {item_data}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    op_data = {"operation": operation, "table": table, "status": status, "details": details}
    if error:
        logger.error(f"DB_OPERATION_FAILED: {op_data} error={error}")
    else:
        logger.debug(f"DB_OPERATION: {op_data}")

"""Per-orchestrator bookkeeping of which jobs are running or flagged paused."""

from __future__ import annotations

import asyncio
import itertools

from rfpflow.errors import JobAlreadyRunning


class ActiveJobRegistry:
    """Lock-protected active/paused sets.

    Each acquisition hands out a run token. A row loop holding a stale token
    (its job was cancelled, or cancelled and restarted) sees itself as inactive
    and stops at its next checkpoint.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._active: dict[str, int] = {}
        self._paused: set[str] = set()
        self._commit_locks: dict[str, asyncio.Lock] = {}
        self._tokens = itertools.count(1)

    async def acquire(self, job_id: str) -> int:
        async with self._lock:
            if job_id in self._active:
                raise JobAlreadyRunning(job_id)
            token = next(self._tokens)
            self._active[job_id] = token
            self._paused.discard(job_id)
            return token

    async def release(self, job_id: str, token: int) -> None:
        async with self._lock:
            if self._active.get(job_id) == token:
                del self._active[job_id]

    async def deactivate(self, job_id: str) -> bool:
        async with self._lock:
            return self._active.pop(job_id, None) is not None

    async def clear(self, job_id: str) -> None:
        async with self._lock:
            self._active.pop(job_id, None)
            self._paused.discard(job_id)

    def is_active(self, job_id: str, token: int | None = None) -> bool:
        current = self._active.get(job_id)
        if token is None:
            return current is not None
        return current == token

    def mark_paused(self, job_id: str) -> None:
        self._paused.add(job_id)

    def clear_paused(self, job_id: str) -> None:
        self._paused.discard(job_id)

    def is_paused(self, job_id: str) -> bool:
        return job_id in self._paused

    def commit_lock(self, job_id: str) -> asyncio.Lock:
        """Serializes a run's persisted writes with reset and cancel for the same job.

        Holders must not publish events while holding it.
        """
        return self._commit_locks.setdefault(job_id, asyncio.Lock())

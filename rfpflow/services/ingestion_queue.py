"""Single-consumer background queue feeding the reference chunk store.

One worker task processes one item at a time. It sleeps on a wake-up event
with a fallback timer tick, so enqueueing wakes it immediately and a missed
signal costs at most one poll interval.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable, Callable

from loguru import logger

from rfpflow.config import settings
from rfpflow.errors import NotFound
from rfpflow.models.cache import (
    PLACEHOLDER_CHUNK_TEXT,
    PLACEHOLDER_CONTENT_HASH,
    ReferenceChunkEntry,
)
from rfpflow.models.jobs import new_id, utcnow
from rfpflow.models.queue import (
    EnqueueResult,
    EnqueueStatus,
    IngestionResult,
    ProcessingQueueItem,
    QueueItemStatus,
    QueueItemType,
)
from rfpflow.services import logger as log_service
from rfpflow.services import streaming
from rfpflow.services.ingestion import ReferenceIngestor
from rfpflow.services.link_validator import probe_content_length
from rfpflow.services.notifier import NullNotifier
from rfpflow.services.store import Store
from rfpflow.services.url_normalizer import normalize_url

SizeProbe = Callable[[str], Awaitable[int | None]]


class IngestionQueue:
    def __init__(
        self,
        store: Store,
        ingestor: ReferenceIngestor,
        *,
        notifier: Any | None = None,
        poll_interval: float | None = None,
        chars_per_chunk: int | None = None,
        size_probe: SizeProbe | None = None,
    ):
        self.store = store
        self.ingestor = ingestor
        self.notifier = notifier or NullNotifier()
        self.poll_interval = float(
            poll_interval if poll_interval is not None else settings.queue_poll_interval_seconds
        )
        self.chars_per_chunk = int(chars_per_chunk or settings.queue_chars_per_chunk)
        self.size_probe = size_probe or probe_content_length
        self._wake = asyncio.Event()
        self._enqueue_lock = asyncio.Lock()
        self._processing_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopping = False

    # --- Producers ---

    def estimate_chunks(self, size: int | None) -> int:
        if not size or size <= 0:
            return 1
        return max(1, math.ceil(size / self.chars_per_chunk))

    async def queue_url(self, url: str, *, priority: int = 1) -> EnqueueResult:
        target = normalize_url(url)
        async with self._enqueue_lock:
            existing = await self.store.get_chunks_for_source(url=target)
            if any(not chunk.is_placeholder for chunk in existing):
                return EnqueueResult(
                    status=EnqueueStatus.ALREADY_CACHED,
                    message=f"Content already cached for {target}",
                )
            active = await self.store.find_active_queue_item(QueueItemType.URL, target)
            if active is not None:
                return EnqueueResult(
                    status=EnqueueStatus.ALREADY_QUEUED,
                    item=active,
                    message=f"{target} is already queued",
                )

            size = await self.size_probe(target)
            item = await self.store.add_queue_item(
                ProcessingQueueItem(
                    id=new_id(),
                    type=QueueItemType.URL,
                    target=target,
                    priority=priority,
                    estimated_size=size,
                    estimated_chunks=self.estimate_chunks(size),
                )
            )
            if not existing:
                # Lets listings show the URL before its content is indexed.
                await self.store.add_chunks(
                    [
                        ReferenceChunkEntry(
                            id=new_id(),
                            url=target,
                            content_hash=PLACEHOLDER_CONTENT_HASH,
                            chunk_index=0,
                            chunk_text=PLACEHOLDER_CHUNK_TEXT,
                            metadata={"queue_item_id": item.id},
                        )
                    ]
                )

        logger.info(f"Queued {target} (~{item.estimated_chunks} chunks)")
        await self._publish_status(item)
        self.notify()
        return EnqueueResult(status=EnqueueStatus.QUEUED, item=item)

    async def queue_document(
        self,
        document_id: str,
        size: int | None = None,
        *,
        priority: int = 1,
    ) -> EnqueueResult:
        async with self._enqueue_lock:
            document = await self.store.get_reference_document(document_id)
            if document is None:
                raise NotFound("Reference document", document_id)
            if document.processed:
                return EnqueueResult(
                    status=EnqueueStatus.ALREADY_CACHED,
                    message=f"{document.filename} is already indexed",
                )
            active = await self.store.find_active_queue_item(QueueItemType.DOCUMENT, document_id)
            if active is not None:
                return EnqueueResult(status=EnqueueStatus.ALREADY_QUEUED, item=active)

            known_size = size if size is not None else document.file_size
            item = await self.store.add_queue_item(
                ProcessingQueueItem(
                    id=new_id(),
                    type=QueueItemType.DOCUMENT,
                    target=document_id,
                    priority=priority,
                    estimated_size=known_size,
                    estimated_chunks=self.estimate_chunks(known_size),
                )
            )

        await self._publish_status(item)
        self.notify()
        return EnqueueResult(status=EnqueueStatus.QUEUED, item=item)

    # --- Consumer ---

    def notify(self) -> None:
        self._wake.set()

    async def process_next(self) -> ProcessingQueueItem | None:
        """Claim and process exactly one pending item; None when the queue is empty."""
        async with self._processing_lock:
            item = await self.store.claim_next_queue_item()
            if item is None:
                return None
            await self._publish_status(item)

            async def _progress(done: int, total: int) -> None:
                await self.notifier.publish(streaming.processing_progress(item.id, done, total))

            try:
                result = await self._ingest(item, _progress)
            except Exception as exc:
                log_service.log_queue_item(item.id, item.target, "failed", error=str(exc))
                item = await self.store.update_queue_item(
                    item.id,
                    status=QueueItemStatus.FAILED,
                    error_message=str(exc) or type(exc).__name__,
                    completed_at=utcnow(),
                )
                await self._publish_status(item, error=item.error_message)
                return item

            item = await self.store.update_queue_item(
                item.id,
                status=QueueItemStatus.COMPLETED,
                actual_chunks=result.chunks_stored,
                completed_at=utcnow(),
            )
            log_service.log_queue_item(item.id, item.target, "completed", chunks=result.chunks_stored)
            await self._publish_status(
                item,
                chunks=result.chunks_stored,
                skipped=result.skipped,
                reason=result.reason,
            )
            return item

    async def _ingest(
        self,
        item: ProcessingQueueItem,
        on_progress: Callable[[int, int], Awaitable[None]],
    ) -> IngestionResult:
        if item.type == QueueItemType.URL:
            return await self.ingestor.ingest_url(item.target, on_progress=on_progress)
        document = await self.store.get_reference_document(item.target)
        if document is None:
            raise NotFound("Reference document", item.target)
        return await self.ingestor.ingest_document(document, on_progress=on_progress)

    async def drain(self) -> int:
        processed = 0
        while await self.process_next() is not None:
            processed += 1
        return processed

    async def run(self) -> None:
        logger.info("Ingestion queue worker started")
        while not self._stopping:
            self._wake.clear()
            try:
                if await self.process_next() is not None:
                    continue
            except Exception as exc:
                logger.error(f"Ingestion queue poll failed: {exc}")
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Ingestion queue worker stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def get_queue_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueItemStatus}
        for item in await self.store.list_queue_items():
            counts[item.status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    async def _publish_status(self, item: ProcessingQueueItem, **kwargs: Any) -> None:
        await self.notifier.publish(
            streaming.processing_status(item.id, item.status.value, item.target, **kwargs)
        )

"""Scrape or extract, chunk, embed and store reference content."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from rfpflow.config import settings
from rfpflow.errors import IngestionFailure
from rfpflow.models.cache import ReferenceChunkEntry
from rfpflow.models.jobs import new_id
from rfpflow.models.queue import IngestionResult, ReferenceDocument
from rfpflow.services import streaming
from rfpflow.services.chunker import Chunk, ContentChunker
from rfpflow.services.document_extractor import extract_document
from rfpflow.services.embeddings import EmbeddingService
from rfpflow.services.link_validator import validate_url
from rfpflow.services.notifier import NullNotifier
from rfpflow.services.store import Store
from rfpflow.services.url_normalizer import is_allowed_domain, is_valid_url, normalize_url
from rfpflow.services.web_scraper import ScrapedPage, content_hash, scrape_url

ProgressCallback = Callable[[int, int], Awaitable[None]]


class ReferenceIngestor:
    def __init__(
        self,
        store: Store,
        embedder: EmbeddingService,
        *,
        chunker: ContentChunker | None = None,
        notifier: Any | None = None,
        allowed_domains: list[str] | None = None,
        check_reachability: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or ContentChunker()
        self.notifier = notifier or NullNotifier()
        self.allowed_domains = (
            allowed_domains if allowed_domains is not None else settings.allowed_domain_list
        )
        self.check_reachability = check_reachability
        self.http_client = http_client

    async def _scrape(self, url: str) -> ScrapedPage:
        return await scrape_url(url, http_client=self.http_client)

    async def ingest_url(self, url: str, on_progress: ProgressCallback | None = None) -> IngestionResult:
        normalized = normalize_url(url)
        if not is_valid_url(normalized):
            raise IngestionFailure(f"Invalid URL: {url}")
        if not is_allowed_domain(normalized, self.allowed_domains):
            raise IngestionFailure(f"URL outside allowed domains: {normalized}")

        existing = await self.store.get_chunks_for_source(url=normalized)
        if any(not chunk.is_placeholder for chunk in existing):
            logger.info(f"Content already cached for {normalized}")
            return IngestionResult(source=normalized, skipped=True, reason="already_cached")

        if self.check_reachability:
            check = await validate_url(normalized, http_client=self.http_client)
            if not check.is_valid:
                raise IngestionFailure(f"URL not reachable: {normalized} ({check.error})")

        page = await self._scrape(normalized)
        await self.store.delete_placeholder_chunks(normalized)
        if await self.store.has_content_hash(page.content_hash):
            logger.info(f"Identical content already indexed, skipping {normalized}")
            return IngestionResult(
                source=normalized,
                skipped=True,
                reason="duplicate_content",
                content_hash=page.content_hash,
                title=page.title,
            )

        chunks = self.chunker.chunk(page.content, normalized)
        entries = await self._embed_chunks(
            chunks,
            digest=page.content_hash,
            url=normalized,
            metadata={"title": page.title, "description": page.metadata.get("description", "")},
            on_progress=on_progress,
        )
        await self.store.add_chunks(entries)
        logger.info(f"Stored {len(entries)} chunks for {normalized}")
        return IngestionResult(
            source=normalized,
            chunks_stored=len(entries),
            content_hash=page.content_hash,
            title=page.title,
        )

    async def ingest_document(
        self,
        document: ReferenceDocument,
        on_progress: ProgressCallback | None = None,
    ) -> IngestionResult:
        extracted = await extract_document(document.path, document.filename)
        digest = content_hash(extracted.text)
        if await self.store.has_content_hash(digest):
            await self.store.update_reference_document(document.id, processed=True, content_hash=digest)
            return IngestionResult(
                source=document.id,
                skipped=True,
                reason="duplicate_content",
                content_hash=digest,
                title=document.filename,
            )

        chunks = self.chunker.chunk(extracted.text, document.id)
        entries = await self._embed_chunks(
            chunks,
            digest=digest,
            document_id=document.id,
            metadata={"title": document.filename, "extraction": extracted.method},
            on_progress=on_progress,
        )
        await self.store.add_chunks(entries)
        await self.store.update_reference_document(document.id, processed=True, content_hash=digest)
        return IngestionResult(
            source=document.id,
            chunks_stored=len(entries),
            content_hash=digest,
            title=document.filename,
        )

    async def _embed_chunks(
        self,
        chunks: list[Chunk],
        *,
        digest: str,
        metadata: dict[str, Any],
        url: str | None = None,
        document_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[ReferenceChunkEntry]:
        # Written in one batch by the caller once every embedding succeeded.
        entries: list[ReferenceChunkEntry] = []
        for chunk in chunks:
            embedding = await self.embedder.embed_text(chunk.text)
            entries.append(
                ReferenceChunkEntry(
                    id=new_id(),
                    url=url,
                    document_id=document_id,
                    content_hash=digest,
                    chunk_index=chunk.index,
                    chunk_text=chunk.text,
                    embedding=embedding,
                    metadata={
                        **metadata,
                        "token_count": chunk.token_count,
                        "start_offset": chunk.start_offset,
                        "end_offset": chunk.end_offset,
                    },
                )
            )
            if on_progress is not None:
                await on_progress(len(entries), len(chunks))
        return entries

    async def process_urls(self, urls: list[str]) -> list[IngestionResult]:
        """Ingest discovered URLs one at a time; a failing URL is logged and skipped."""
        results: list[IngestionResult] = []
        seen: set[str] = set()
        for url in urls:
            normalized = normalize_url(url)
            if normalized in seen:
                continue
            seen.add(normalized)
            await self.notifier.publish(streaming.processing_log("ingestion", f"Processing {normalized}"))
            try:
                result = await self.ingest_url(normalized)
            except IngestionFailure as exc:
                logger.warning(str(exc))
                await self.notifier.publish(streaming.processing_log("ingestion", f"Skipped: {exc}"))
                continue
            results.append(result)
            message = (
                f"Skipped {normalized}: {result.reason}"
                if result.skipped
                else f"Indexed {result.chunks_stored} chunks from {normalized}"
            )
            await self.notifier.publish(streaming.processing_log("ingestion", message))
        return results

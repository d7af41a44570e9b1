"""Embedding-similarity caches for reference lists and generated drafts.

Both caches embed a normalized key, linearly scan stored entries for the best
cosine match at or above a threshold, and only write after the expensive call
they front has succeeded. Write failures never surface to callers.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from rfpflow.config import settings
from rfpflow.errors import CacheWriteFailure
from rfpflow.models.cache import (
    CacheMatch,
    LinkStatus,
    ReferenceCacheEntry,
    ReferenceLink,
    ResponseCacheEntry,
    SearchHit,
)
from rfpflow.models.jobs import new_id, utcnow
from rfpflow.services import logger as log_service
from rfpflow.services.embeddings import EmbeddingService
from rfpflow.services.link_validator import ValidationResult, extract_urls, validate_urls
from rfpflow.services.similarity import normalize_question
from rfpflow.services.store import Store

Validator = Callable[[list[str]], Awaitable[list[ValidationResult]]]

MAX_KEY_REFERENCE_LINES = 10
SUMMARY_MAX_URLS = 5
SUMMARY_MAX_CHARS = 500

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


async def _default_validator(urls: list[str]) -> list[ValidationResult]:
    return await validate_urls(urls)


class ReferenceCache:
    def __init__(
        self,
        store: Store,
        embedder: EmbeddingService,
        *,
        threshold: float | None = None,
        validity_hours: int | None = None,
        validator: Validator | None = None,
    ):
        self._store = store
        self.embedder = embedder
        self.threshold = float(threshold if threshold is not None else settings.reference_cache_threshold)
        self.validity = timedelta(
            hours=validity_hours if validity_hours is not None else settings.reference_validity_hours
        )
        self.validator = validator or _default_validator

    def is_stale(self, entry: ReferenceCacheEntry, now: datetime | None = None) -> bool:
        return (now or utcnow()) - entry.validated_at > self.validity

    async def lookup(self, question: str, threshold: float | None = None) -> CacheMatch | None:
        """Best cached reference list for a similar question, revalidated when stale."""
        embedding = await self.embedder.embed_text(normalize_question(question))
        hit = await self._store.find_similar_reference_entry(
            embedding, self.threshold if threshold is None else threshold
        )
        log_service.log_cache_lookup("reference", hit is not None, question, hit.similarity if hit else None)
        if hit is None:
            return None

        entry = hit.item
        if self.is_stale(entry):
            await self.revalidate(entry)
        return CacheMatch(entry=entry, similarity=hit.similarity)

    async def revalidate(self, entry: ReferenceCacheEntry) -> ReferenceCacheEntry:
        """Refresh per-reference status flags in place; the entry itself stays cached."""
        urls = [ref.url for ref in entry.references]
        results = await self.validator(urls) if urls else []
        by_url = {result.url: result for result in results}
        for ref in entry.references:
            result = by_url.get(ref.url)
            if result is None:
                continue
            ref.status = result.status
            ref.status_code = result.status_code
            ref.error = result.error
        entry.validated_at = utcnow()
        try:
            await self._store.update_reference_cache_entry(entry)
        except Exception as exc:
            _log_write_failure("reference revalidation", exc)
        valid = len(entry.valid_references())
        logger.info(f"Revalidated cached references: {valid}/{len(entry.references)} valid")
        return entry

    async def store(
        self,
        question: str,
        references: list[ReferenceLink],
    ) -> ReferenceCacheEntry | None:
        try:
            embedding = await self.embedder.embed_text(normalize_question(question))
            entry = ReferenceCacheEntry(
                id=new_id(),
                question=question,
                question_embedding=embedding,
                references=references,
                validated_at=utcnow(),
            )
            await self._store.add_reference_cache_entry(entry)
        except Exception as exc:
            _log_write_failure("reference cache", exc)
            return None
        logger.info(f"Cached {len(references)} references for: {question[:80]}")
        return entry


def key_reference_lines(references_text: str) -> list[str]:
    lines = []
    for line in (references_text or "").splitlines():
        stripped = line.strip()
        if stripped and ("http" in stripped or "**" in stripped or "Title:" in stripped):
            lines.append(stripped)
        if len(lines) >= MAX_KEY_REFERENCE_LINES:
            break
    return lines


def combined_key(question: str, references_text: str) -> str:
    """Normalized question plus the reference lines that identify the source set."""
    key = normalize_question(question)
    lines = key_reference_lines(references_text)
    if lines:
        key = f"{key} || " + "\n".join(lines)
    return key


def _titled_references(references_text: str) -> list[tuple[str, str]]:
    """(url, title) pairs from a JSON reference list or from markdown lines.

    In markdown, a ``**title**`` applies to the next URL found.
    """
    try:
        data: Any = json.loads(references_text)
    except (TypeError, ValueError):
        data = None
    if isinstance(data, dict):
        data = data.get("references")
    if isinstance(data, list):
        pairs = []
        for item in data:
            if isinstance(item, str):
                pairs.append((item.strip(), ""))
            elif isinstance(item, dict) and isinstance(item.get("url"), str):
                pairs.append((item["url"].strip(), str(item.get("title") or "").strip()))
        return pairs

    pairs = []
    title = ""
    for line in (references_text or "").splitlines():
        bold = _BOLD_RE.search(line)
        if bold:
            title = bold.group(1).strip()
        for url in extract_urls(line):
            pairs.append((url, title))
            title = ""
    return pairs


def reference_summary(references_text: str) -> str:
    """First references as ``url (title)`` joined by `` | ``, capped in length."""
    parts = [
        f"{url} ({title})" if title else url
        for url, title in _titled_references(references_text)[:SUMMARY_MAX_URLS]
    ]
    return " | ".join(parts)[:SUMMARY_MAX_CHARS]


class ResponseCache:
    def __init__(
        self,
        store: Store,
        embedder: EmbeddingService,
        *,
        threshold: float | None = None,
    ):
        self._store = store
        self.embedder = embedder
        self.threshold = float(threshold if threshold is not None else settings.response_cache_threshold)

    async def lookup(
        self,
        question: str,
        references_text: str = "",
        threshold: float | None = None,
    ) -> CacheMatch | None:
        embedding = await self.embedder.embed_text(combined_key(question, references_text))
        hit = await self._store.find_similar_response_entry(
            embedding, self.threshold if threshold is None else threshold
        )
        log_service.log_cache_lookup("response", hit is not None, question, hit.similarity if hit else None)
        if hit is None:
            return None
        return CacheMatch(entry=hit.item, similarity=hit.similarity)

    async def store(
        self,
        question: str,
        references_text: str,
        response: str,
        metadata: dict | None = None,
    ) -> ResponseCacheEntry | None:
        try:
            embedding = await self.embedder.embed_text(combined_key(question, references_text))
            entry = ResponseCacheEntry(
                id=new_id(),
                original_question=question,
                reference_summary=reference_summary(references_text),
                combined_embedding=embedding,
                generated_response=response,
                metadata=dict(metadata or {}),
            )
            await self._store.add_response_cache_entry(entry)
        except Exception as exc:
            _log_write_failure("response cache", exc)
            return None
        return entry


async def semantic_search(
    store: Store,
    embedder: EmbeddingService,
    query: str,
    *,
    top_k: int | None = None,
    min_similarity: float | None = None,
) -> list[SearchHit]:
    """Reference chunks most similar to ``query``, best first."""
    if not query.strip():
        return []
    embedding = await embedder.embed_text(query)
    scored = await store.find_similar_chunks(
        embedding,
        int(top_k if top_k is not None else settings.semantic_search_max_results),
        float(min_similarity if min_similarity is not None else settings.semantic_search_min_similarity),
    )
    return [SearchHit(chunk=s.item, similarity=s.similarity) for s in scored]


def unique_urls(hits: list[SearchHit]) -> list[str]:
    seen: set[str] = set()
    urls: list[str] = []
    for hit in hits:
        url = hit.chunk.url
        if url and url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


def links_from_hits(hits: list[SearchHit]) -> list[ReferenceLink]:
    links: list[ReferenceLink] = []
    seen: set[str] = set()
    for hit in hits:
        url = hit.chunk.url
        if not url or url in seen:
            continue
        seen.add(url)
        links.append(
            ReferenceLink(
                url=url,
                title=str(hit.chunk.metadata.get("title", "")),
                description=str(hit.chunk.metadata.get("description", "")),
                status=LinkStatus.VALID,
            )
        )
    return links


def _log_write_failure(cache: str, exc: Exception) -> None:
    failure = exc if isinstance(exc, CacheWriteFailure) else CacheWriteFailure(f"{cache} write failed: {exc}")
    logger.warning(str(failure))

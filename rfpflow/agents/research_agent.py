from __future__ import annotations

import json
from typing import Any

from loguru import logger

from rfpflow.agents.base import BaseStepAgent
from rfpflow.config import settings
from rfpflow.errors import StepFailure
from rfpflow.llm_client import CompletionClient, ModelParams
from rfpflow.models.cache import LinkStatus, ReferenceLink
from rfpflow.models.jobs import RowContext, StepConfig, StepStrategy
from rfpflow.services.embeddings import EmbeddingService
from rfpflow.services.ingestion import ReferenceIngestor
from rfpflow.services.link_validator import extract_urls, validate_urls
from rfpflow.services.prompt_store import render_prompt
from rfpflow.services.semantic_cache import ReferenceCache, links_from_hits, semantic_search
from rfpflow.services.store import Store
from rfpflow.services.url_normalizer import is_allowed_domain, normalize_url

_URL_KEYS = ("url", "Reference_URL", "reference_url", "link", "href")


def parse_discovered_urls(payload: str) -> list[str]:
    """URLs from a discovery completion: JSON references list, bare list, or free text."""
    try:
        data: Any = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return extract_urls(payload or "")

    if isinstance(data, dict):
        data = data.get("references") or data.get("urls") or []
    urls: list[str] = []
    if isinstance(data, list):
        for item in data:
            if isinstance(item, str):
                urls.append(item)
            elif isinstance(item, dict):
                for key in _URL_KEYS:
                    if isinstance(item.get(key), str):
                        urls.append(item[key])
                        break
    seen: set[str] = set()
    unique: list[str] = []
    for url in urls:
        if url.strip() and url not in seen:
            seen.add(url)
            unique.append(url.strip())
    return unique


async def discover_urls(
    llm: CompletionClient,
    question: str,
    *,
    allowed_domains: list[str] | None = None,
    model: str | None = None,
    context: str = "",
) -> list[str]:
    """Ask the completion model for candidate source URLs within the allowed domains."""
    domains = allowed_domains if allowed_domains is not None else settings.allowed_domain_list
    user_prompt = render_prompt(
        "research.discovery_user",
        question=question,
        allowed_domains=", ".join(domains) if domains else render_prompt("research.any_domain"),
    )
    if context:
        user_prompt = f"{context}\n\n{user_prompt}"
    text = await llm.complete(
        render_prompt("research.discovery_system"),
        user_prompt,
        ModelParams(model=model or settings.url_discovery_model, temperature=0.1, json_output=True),
    )
    urls = [normalize_url(url) for url in parse_discovered_urls(text)]
    return [url for url in urls if is_allowed_domain(url, domains)]


class ResearchAgent(BaseStepAgent):
    """Builds a reference list for the contextual question.

    Order: reference cache, then the chunk index, then URL discovery with
    synchronous ingestion followed by a second chunk search.
    """

    name = "research"
    strategy = StepStrategy.RESEARCH

    def __init__(
        self,
        llm: CompletionClient,
        store: Store,
        embedder: EmbeddingService,
        reference_cache: ReferenceCache,
        ingestor: ReferenceIngestor,
        *,
        notifier: Any | None = None,
        validator=None,
    ):
        super().__init__(llm, notifier=notifier)
        self.store = store
        self.embedder = embedder
        self.reference_cache = reference_cache
        self.ingestor = ingestor
        self.validator = validator or validate_urls

    async def run(self, step: StepConfig, row: RowContext, *, job_id: str = "") -> str:
        question = row.contextual_question or row.question
        use_cache = not step.has_tool("no_cache")

        if use_cache:
            match = await self.reference_cache.lookup(question)
            if match is not None:
                cached = match.entry.valid_references()
                if cached:
                    await self.log(job_id, f"Using {len(cached)} cached references ({match.similarity:.2f})")
                    return _format_references(cached)
                await self.log(job_id, "Cached references are no longer valid, researching again")

        hits = await semantic_search(self.store, self.embedder, question)
        if not hits:
            await self.log(job_id, "No indexed reference content matched, discovering sources")
            context = self.render(step, step.user_prompt, self.variables(row)) if step.user_prompt else ""
            try:
                urls = await discover_urls(self.llm, question, model=step.model, context=context)
            except Exception as exc:
                raise StepFailure(step.name, f"URL discovery failed: {exc}") from exc
            await self.log(job_id, f"Discovered {len(urls)} candidate URLs")
            await self.ingestor.process_urls(urls)
            hits = await semantic_search(self.store, self.embedder, question)

        links = links_from_hits(hits)
        if step.has_tool("link_validation") and links:
            links = await self._validate(links)

        await self.log(job_id, f"Assembled {len(links)} references")
        if links and use_cache:
            await self.reference_cache.store(question, links)
        return _format_references(links)

    async def _validate(self, links: list[ReferenceLink]) -> list[ReferenceLink]:
        results = await self.validator([link.url for link in links])
        by_url = {result.url: result for result in results}
        kept: list[ReferenceLink] = []
        for link in links:
            result = by_url.get(link.url)
            if result is None:
                kept.append(link)
                continue
            link.status = result.status
            link.status_code = result.status_code
            link.error = result.error
            if result.status != LinkStatus.INVALID:
                kept.append(link)
            else:
                logger.info(f"Dropping unreachable reference {link.url}")
        return kept


def _format_references(links: list[ReferenceLink]) -> str:
    return json.dumps([link.url for link in links], indent=2)

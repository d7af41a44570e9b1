"""HEAD-probe reachability checks for reference links."""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass

import httpx
from loguru import logger

from rfpflow.config import settings
from rfpflow.models.cache import LinkStatus

USER_AGENT = "rfpflow/0.1 (link validator)"

_URL_RE = re.compile(r"https?://[^\s<>\"'\)\]]+")


@dataclass(slots=True)
class ValidationResult:
    url: str
    status: LinkStatus
    status_code: int | None = None
    error: str | None = None
    response_time_ms: int = 0
    final_url: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == LinkStatus.VALID


def extract_urls(text: str) -> list[str]:
    """URLs in order of first appearance, trailing punctuation stripped."""
    seen: set[str] = set()
    urls: list[str] = []
    for match in _URL_RE.findall(text or ""):
        url = match.rstrip(".,;:!?")
        if url not in seen:
            seen.add(url)
            urls.append(url)
    return urls


async def validate_url(
    url: str,
    *,
    timeout_seconds: float | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ValidationResult:
    timeout = float(timeout_seconds or settings.link_check_timeout_seconds)
    t0 = time.monotonic()

    async def _probe(client: httpx.AsyncClient) -> httpx.Response:
        return await client.head(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            follow_redirects=True,
        )

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await _probe(client)
        else:
            response = await _probe(http_client)
    except httpx.TimeoutException:
        logger.debug(f"Link timeout: {url}")
        return ValidationResult(
            url=url,
            status=LinkStatus.TIMEOUT,
            error="Request timeout",
            response_time_ms=int((time.monotonic() - t0) * 1000),
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug(f"Link error: {url} - {exc}")
        return ValidationResult(
            url=url,
            status=LinkStatus.INVALID,
            error=str(exc) or type(exc).__name__,
            response_time_ms=int((time.monotonic() - t0) * 1000),
        )

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    if response.is_success:
        return ValidationResult(
            url=url,
            status=LinkStatus.VALID,
            status_code=response.status_code,
            response_time_ms=elapsed_ms,
            final_url=str(response.url),
        )
    return ValidationResult(
        url=url,
        status=LinkStatus.INVALID,
        status_code=response.status_code,
        error=f"HTTP {response.status_code}: {response.reason_phrase}",
        response_time_ms=elapsed_ms,
    )


async def validate_urls(
    urls: list[str],
    *,
    batch_size: int | None = None,
    timeout_seconds: float | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> list[ValidationResult]:
    """Validate in parallel batches, returning results in input order."""
    size = max(1, int(batch_size or settings.link_check_batch_size))
    results: list[ValidationResult] = []
    for i in range(0, len(urls), size):
        batch = urls[i : i + size]
        results.extend(
            await asyncio.gather(
                *(
                    validate_url(url, timeout_seconds=timeout_seconds, http_client=http_client)
                    for url in batch
                )
            )
        )
    valid = sum(1 for r in results if r.is_valid)
    logger.info(f"Link validation: {valid}/{len(results)} valid")
    return results


async def probe_content_length(
    url: str,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> int | None:
    """Content-Length from a HEAD request, or None when unknown or unreachable."""

    async def _probe(client: httpx.AsyncClient) -> httpx.Response:
        return await client.head(url, headers={"User-Agent": USER_AGENT}, follow_redirects=True)

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=settings.link_check_timeout_seconds) as client:
                response = await _probe(client)
        else:
            response = await _probe(http_client)
    except httpx.HTTPError as exc:
        logger.debug(f"Size probe failed for {url}: {exc}")
        return None
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return max(0, int(raw))
    except ValueError:
        return None

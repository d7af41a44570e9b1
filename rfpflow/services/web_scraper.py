from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from rfpflow.config import settings
from rfpflow.errors import IngestionFailure

USER_AGENT = "Mozilla/5.0 (compatible; rfpflow/0.1)"

_STRIP_SELECTORS = "script, style, noscript, nav, header, footer, aside, .navigation, .nav, .menu"
_CONTENT_SELECTORS = (
    "main",
    '[role="main"]',
    "article",
    ".content",
    ".main-content",
    "#content",
    ".documentation",
    ".docs",
)


@dataclass(slots=True)
class ScrapedPage:
    url: str
    title: str
    content: str
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" ?\n ?", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extract_page(url: str, html: str, *, min_chars: int | None = None) -> ScrapedPage:
    """Pull readable text out of an HTML document.

    Raises IngestionFailure when the remaining text is shorter than ``min_chars``.
    """
    threshold = int(min_chars if min_chars is not None else settings.scrape_min_content_chars)
    soup = BeautifulSoup(html, "html.parser")
    for node in soup.select(_STRIP_SELECTORS):
        node.decompose()

    title = ""
    if soup.title and soup.title.string:
        title = _normalize_text(soup.title.string)
    if not title:
        h1 = soup.find("h1")
        title = _normalize_text(h1.get_text(" ")) if h1 else ""
    title = title or "Untitled"

    description = ""
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            description = str(meta["content"]).strip()
            break

    root = None
    for selector in _CONTENT_SELECTORS:
        root = soup.select_one(selector)
        if root is not None:
            break
    if root is None:
        root = soup.body or soup

    text = _normalize_text(root.get_text("\n"))
    if len(text) < threshold:
        raise IngestionFailure(f"Content too short for {url}: {len(text)} characters")

    return ScrapedPage(
        url=url,
        title=title,
        content=text,
        content_hash=content_hash(text),
        metadata={
            "title": title,
            "description": description,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "word_count": len(text.split()),
        },
    )


async def scrape_url(
    url: str,
    *,
    timeout_seconds: float | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ScrapedPage:
    timeout = float(timeout_seconds or settings.scrape_timeout_seconds)
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
    }

    async def _fetch(client: httpx.AsyncClient) -> httpx.Response:
        return await client.get(url, headers=headers, timeout=timeout, follow_redirects=True)

    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await _fetch(client)
        else:
            response = await _fetch(http_client)
    except httpx.HTTPError as exc:
        raise IngestionFailure(f"Failed to fetch {url}: {exc}") from exc

    if not response.is_success:
        raise IngestionFailure(f"Failed to fetch {url}: HTTP {response.status_code}")

    page = extract_page(url, response.text)
    logger.info(f"Scraped {url}: {page.metadata['word_count']} words")
    return page

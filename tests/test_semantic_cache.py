from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from rfpflow.models.cache import LinkStatus, ReferenceChunkEntry, ReferenceLink
from rfpflow.models.jobs import utcnow
from rfpflow.services.link_validator import ValidationResult
from rfpflow.services.semantic_cache import (
    ReferenceCache,
    ResponseCache,
    combined_key,
    reference_summary,
    semantic_search,
    unique_urls,
)


def _links(*urls: str) -> list[ReferenceLink]:
    return [ReferenceLink(url=url, status=LinkStatus.VALID) for url in urls]


@pytest.mark.asyncio
async def test_reference_cache_returns_stored_entry_for_same_question(store, embedder):
    cache = ReferenceCache(store, embedder, threshold=0.85)
    await cache.store("Do you support SSO?", _links("https://docs.example.com/sso"))

    match = await cache.lookup("do you support sso")

    assert match is not None
    assert match.similarity == pytest.approx(1.0)
    assert [ref.url for ref in match.entry.references] == ["https://docs.example.com/sso"]


@pytest.mark.asyncio
async def test_reference_cache_misses_unrelated_question(store, embedder):
    cache = ReferenceCache(store, embedder, threshold=0.85)
    await cache.store("Do you support SSO?", _links("https://docs.example.com/sso"))

    assert await cache.lookup("Describe your disaster recovery plan") is None


@pytest.mark.asyncio
async def test_stale_entry_is_revalidated_and_invalid_links_dropped(store, embedder):
    validator = AsyncMock(
        return_value=[
            ValidationResult(url="https://a.example.com", status=LinkStatus.VALID, status_code=200),
            ValidationResult(url="https://b.example.com", status=LinkStatus.INVALID, status_code=404),
        ]
    )
    cache = ReferenceCache(store, embedder, validity_hours=24, validator=validator)
    entry = await cache.store("Where is data hosted?", _links("https://a.example.com", "https://b.example.com"))
    entry.validated_at = utcnow() - timedelta(hours=25)

    match = await cache.lookup("Where is data hosted?")

    validator.assert_awaited_once_with(["https://a.example.com", "https://b.example.com"])
    assert [ref.url for ref in match.entry.valid_references()] == ["https://a.example.com"]
    assert match.entry.references[1].status_code == 404
    assert not cache.is_stale(match.entry)


@pytest.mark.asyncio
async def test_fresh_entry_is_not_revalidated(store, embedder):
    validator = AsyncMock(return_value=[])
    cache = ReferenceCache(store, embedder, validator=validator)
    await cache.store("Where is data hosted?", _links("https://a.example.com"))

    await cache.lookup("Where is data hosted?")

    validator.assert_not_awaited()


@pytest.mark.asyncio
async def test_cache_write_failure_is_swallowed(store, embedder, monkeypatch):
    monkeypatch.setattr(store, "add_reference_cache_entry", AsyncMock(side_effect=RuntimeError("db down")))
    monkeypatch.setattr(store, "add_response_cache_entry", AsyncMock(side_effect=RuntimeError("db down")))

    assert await ReferenceCache(store, embedder).store("q", _links("https://a.example.com")) is None
    assert await ResponseCache(store, embedder).store("q", "refs", "answer") is None


@pytest.mark.asyncio
async def test_response_cache_keys_on_question_and_references(store, embedder):
    cache = ResponseCache(store, embedder, threshold=0.88)
    references = '[\n  "https://docs.example.com/sso"\n]'
    await cache.store("Do you support SSO?", references, "Yes, via SAML.", {"model": "gpt-4o"})

    hit = await cache.lookup("Do you support SSO?", references)
    assert hit is not None
    assert hit.entry.generated_response == "Yes, via SAML."
    assert hit.entry.reference_summary == "https://docs.example.com/sso"
    assert hit.entry.metadata == {"model": "gpt-4o"}

    assert await cache.lookup("Describe your incident response process", references) is None


def test_combined_key_appends_reference_lines():
    key = combined_key("Do you support SSO?", "Intro text\nhttps://a.example.com\n**Title**")
    assert key == "do you support sso || https://a.example.com\n**Title**"
    assert combined_key("Do you support SSO?", "") == "do you support sso"


def test_reference_summary_keeps_first_five_urls():
    text = " ".join(f"https://example.com/{i}" for i in range(8))
    assert reference_summary(text).split(" | ") == [f"https://example.com/{i}" for i in range(5)]


def test_reference_summary_pairs_urls_with_titles():
    markdown = "Sources:\n**SSO guide**\nhttps://docs.example.com/sso\n- https://docs.example.com/mfa\n"
    assert reference_summary(markdown) == (
        "https://docs.example.com/sso (SSO guide) | https://docs.example.com/mfa"
    )

    listed = json.dumps(
        [
            {"url": "https://docs.example.com/sso", "title": "SSO guide"},
            "https://docs.example.com/mfa",
        ]
    )
    assert reference_summary(listed) == (
        "https://docs.example.com/sso (SSO guide) | https://docs.example.com/mfa"
    )


def test_reference_summary_is_capped():
    long_title = "x" * 400
    text = json.dumps([{"url": f"https://example.com/{i}", "title": long_title} for i in range(3)])
    assert len(reference_summary(text)) == 500


@pytest.mark.asyncio
async def test_semantic_search_skips_placeholders_and_orders_hits(store, embedder):
    await store.add_chunks(
        [
            ReferenceChunkEntry(
                id="c1",
                content_hash="h1",
                chunk_index=0,
                chunk_text="single sign-on with SAML",
                embedding=await embedder.embed_text("single sign-on with SAML"),
                url="https://a.example.com",
            ),
            ReferenceChunkEntry(
                id="c2",
                content_hash="h2",
                chunk_index=0,
                chunk_text="single sign-on with SAML and OIDC providers",
                embedding=await embedder.embed_text("single sign-on with SAML and OIDC providers"),
                url="https://b.example.com",
            ),
            ReferenceChunkEntry(
                id="c3",
                content_hash="pending",
                chunk_index=0,
                chunk_text="URL queued for processing",
                embedding=await embedder.embed_text("single sign-on with SAML"),
                url="https://c.example.com",
            ),
        ]
    )

    hits = await semantic_search(store, embedder, "single sign-on with SAML", top_k=5, min_similarity=0.4)

    assert [hit.chunk.id for hit in hits] == ["c1", "c2"]
    assert unique_urls(hits) == ["https://a.example.com", "https://b.example.com"]
    assert await semantic_search(store, embedder, "   ") == []

from __future__ import annotations

from rfpflow.services.url_normalizer import get_domain, is_allowed_domain, is_valid_url, normalize_url


def test_normalize_url_canonicalizes_host_path_query_and_fragment():
    assert normalize_url("HTTPS://Docs.Example.com/Guide/?b=2&a=1#intro") == "https://docs.example.com/Guide?a=1&b=2"
    assert normalize_url("docs.example.com") == "https://docs.example.com/"
    assert normalize_url("  https://example.com  ") == "https://example.com/"
    assert normalize_url("") == ""


def test_normalize_url_is_idempotent():
    once = normalize_url("Example.com/a/b/?z=1&y=2")
    assert normalize_url(once) == once


def test_is_valid_url():
    assert is_valid_url("https://example.com/page")
    assert is_valid_url("example.com")
    assert not is_valid_url("https://localhost")
    assert not is_valid_url("")


def test_allowed_domains_match_subdomains_only():
    allowed = ["example.com"]
    assert get_domain("https://Docs.Example.com/x") == "docs.example.com"
    assert is_allowed_domain("https://example.com/a", allowed)
    assert is_allowed_domain("https://docs.example.com/a", allowed)
    assert not is_allowed_domain("https://badexample.com/a", allowed)
    assert is_allowed_domain("https://anything.org", [])

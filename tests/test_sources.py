"""Tests for research output cleanup and source extraction."""
from __future__ import annotations

from commander.sources import clean_worker_content, collect_sources, extract_sources

REDIRECT = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/AbC123xyz"


def test_redirect_urls_are_stripped():
    raw = f"Fact one [Source: {REDIRECT}].\n\n\n\nFact two ({REDIRECT})."
    cleaned = clean_worker_content(raw)
    assert "vertexaisearch" not in cleaned
    assert "[Source:" not in cleaned
    assert "()" not in cleaned
    assert "\n\n\n" not in cleaned
    assert cleaned.startswith("Fact one")


def test_clean_content_leaves_real_citations():
    raw = "Per the docs [Source: https://docs.python.org/3/library/asyncio.html]"
    assert clean_worker_content(raw) == raw


def test_extract_sources_dedupes_and_trims_punctuation():
    content = (
        "See https://example.com/a, and https://example.com/a. "
        "Also (https://peps.python.org/pep-0492/)."
    )
    assert extract_sources(content) == [
        "https://example.com/a",
        "https://peps.python.org/pep-0492/",
    ]


def test_extract_sources_skips_redirects_and_short_urls():
    assert extract_sources(f"{REDIRECT} http://a.b") == []


def test_bare_domain_citations_get_https():
    content = "Claim [Source: arxiv.org, nature.com] and [Source: not a domain]"
    assert extract_sources(content) == ["https://arxiv.org", "https://nature.com"]


def test_collect_sources_across_workers_keeps_first_seen_order():
    contents = [
        "https://b.example.org/page then https://a.example.org/page",
        "https://a.example.org/page and https://c.example.org/page",
    ]
    assert collect_sources(contents) == [
        "https://b.example.org/page",
        "https://a.example.org/page",
        "https://c.example.org/page",
    ]

"""
Research output post-processing: redirect-URL cleanup and source extraction.

Gemini's grounding search cites vertexaisearch redirect URLs that are useless
to readers and waste synthesis tokens; they are stripped before synthesis and
never reported as sources.
"""
from __future__ import annotations

import re
from typing import Iterable

FILTERED_SOURCE_DOMAINS = (
    "vertexaisearch.cloud.google.com",
    "googleusercontent.com/grounding",
)

_REDIRECT_RE = re.compile(
    r"https?://vertexaisearch\.cloud\.google\.com/grounding-api-redirect/[^\s\])\"',]+"
)
_EMPTY_CITATION_RE = re.compile(r"\[Source:\s*(?:\[internal-redirect\](?:,\s*)?)+\]", re.IGNORECASE)
_URL_RE = re.compile(r"https?://[^\s\])\"'<>,]+")
_DOMAIN_CITATION_RE = re.compile(r"\[Source:\s*([^\]]+)\]", re.IGNORECASE)


def clean_worker_content(content: str) -> str:
    cleaned = _REDIRECT_RE.sub("[internal-redirect]", content)
    cleaned = _EMPTY_CITATION_RE.sub("", cleaned)
    cleaned = cleaned.replace("[internal-redirect]", "")
    cleaned = re.sub(r"\(\s*\)", "", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def extract_sources(content: str) -> list[str]:
    """Unique cited URLs in first-seen order; bare-domain citations get https://."""
    seen: dict[str, None] = {}
    for match in _URL_RE.finditer(content):
        url = re.sub(r"[.),:;]+$", "", match.group(0))
        if len(url) > 10 and not any(d in url for d in FILTERED_SOURCE_DOMAINS):
            seen.setdefault(url, None)

    for match in _DOMAIN_CITATION_RE.finditer(content):
        for domain in (d.strip() for d in match.group(1).split(",")):
            if domain and not domain.startswith("http") and "." in domain:
                seen.setdefault(f"https://{domain}", None)
    return list(seen)


def collect_sources(contents: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for content in contents:
        for url in extract_sources(content):
            seen.setdefault(url, None)
    return list(seen)

"""Heuristic content quality scoring and search query validation."""
from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

REPUTABLE_DOMAINS = (
    # Academic & research
    "scholar.google.com",
    "researchgate.net",
    "arxiv.org",
    "pubmed.ncbi.nlm.nih.gov",
    "nature.com",
    "science.org",
    "sciencedirect.com",
    "springer.com",
    "wiley.com",
    # Government & organizations
    "nih.gov",
    "cdc.gov",
    "who.int",
    "un.org",
    "europa.eu",
    # News
    "nytimes.com",
    "wsj.com",
    "bbc.com",
    "reuters.com",
    "apnews.com",
    "theguardian.com",
    # Tech & documentation
    "github.com",
    "stackoverflow.com",
    "medium.com",
    "dev.to",
    "mozilla.org",
    "w3.org",
)
ACADEMIC_SUFFIXES = (".edu", ".ac.uk", ".gov")
BROAD_TERMS = frozenset({"what", "how", "why", "when", "where", "who"})

WEIGHT_LENGTH = 0.35
WEIGHT_TITLE = 0.15
WEIGHT_DOMAIN = 0.30
WEIGHT_READABILITY = 0.20
TITLE_PRESENT_SCORE = 25

_SPECIAL_CHARS = re.compile(r"[^\w\s.,!?;:()\-'\"]")
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


@dataclass(frozen=True, slots=True)
class QueryValidation:
    valid: bool
    reason: str | None = None


def score_content(title: str, url: str, content: str) -> int:
    """Score content quality from 0 to 100."""
    score = (
        score_length(content) * WEIGHT_LENGTH
        + (TITLE_PRESENT_SCORE if title else 0) * WEIGHT_TITLE
        + score_domain(url) * WEIGHT_DOMAIN
        + score_readability(content) * WEIGHT_READABILITY
    )
    return round(min(100.0, max(0.0, score)))


def score_length(content: str) -> int:
    length = len(content)
    if length < 200:
        return 10
    if length < 500:
        return 30
    if length < 1000:
        return 50
    if length < 3000:
        return 80
    if length < 10000:
        return 100
    if length < 30000:
        return 90
    if length < 100000:
        return 70
    return 50  # very long, possibly a dump


def score_domain(url: str) -> int:
    try:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
    except ValueError:
        return 0
    if not parsed.scheme or not hostname:
        return 0

    if hostname.endswith(ACADEMIC_SUFFIXES):
        return 100
    if any(domain in hostname for domain in REPUTABLE_DOMAINS):
        return 90

    # Spam signals
    if len(hostname.split(".")) > 4:
        return 30
    if re.search(r"\d{3,}", hostname):
        return 20
    if len(hostname) > 50:
        return 20

    return 60


def score_readability(content: str) -> int:
    normalized = " ".join(content.split())
    if not normalized:
        return 0

    sentences = [s for s in _SENTENCE_SPLIT.split(normalized) if s.strip()]
    words = normalized.split(" ")
    avg_words_per_sentence = len(words) / max(1, len(sentences))
    avg_word_length = sum(len(w) for w in words) / max(1, len(words))

    score = 50
    if 10 <= avg_words_per_sentence <= 30:
        score += 25
    elif avg_words_per_sentence < 5 or avg_words_per_sentence > 50:
        score -= 15

    if 4 <= avg_word_length <= 7:
        score += 25
    elif avg_word_length < 3 or avg_word_length > 10:
        score -= 15

    special_ratio = len(_SPECIAL_CHARS.findall(normalized)) / len(normalized)
    if special_ratio > 0.1:
        score -= 30

    paragraphs = [p for p in _PARAGRAPH_SPLIT.split(content) if p.strip()]
    if len(paragraphs) > 1:
        score += 10

    return min(100, max(0, score))


def validate_query(query: str) -> QueryValidation:
    trimmed = query.strip()

    if len(trimmed) < 3:
        return QueryValidation(False, "Query too short (minimum 3 characters)")
    if len(trimmed) > 200:
        return QueryValidation(False, "Query too long (maximum 200 characters)")
    if not any(ch.isalnum() for ch in trimmed):
        return QueryValidation(False, "Query contains only special characters")

    words = trimmed.lower().split()
    if len(words) > 3 and len(set(words)) / len(words) < 0.4:
        return QueryValidation(False, "Query has too much repetition")

    if len(words) <= 1 and BROAD_TERMS.intersection(words):
        return QueryValidation(False, "Query too broad (single question word)")

    return QueryValidation(True)

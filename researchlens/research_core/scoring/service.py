from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from researchlens.models.schemas import SourceRecord

HIGH_CREDIBILITY_DOMAINS = (
    "reuters.com",
    "bloomberg.com",
    "nature.com",
    "science.org",
    "github.com",
)
MEDIUM_CREDIBILITY_DOMAINS = (
    "techcrunch.com",
    "arstechnica.com",
    "wired.com",
    "stackoverflow.com",
)

HIGH_CREDIBILITY_SCORE = 0.9
MEDIUM_CREDIBILITY_SCORE = 0.7
DEFAULT_CREDIBILITY_SCORE = 0.5
AUTHOR_BONUS = 0.1

TITLE_BOOST_WEIGHT = 0.3
NEUTRAL_FRESHNESS = 0.5

# (max age in days, score); anything older scores FRESHNESS_FLOOR.
FRESHNESS_STEPS = (
    (1, 1.0),
    (7, 0.9),
    (30, 0.7),
    (90, 0.5),
)
FRESHNESS_FLOOR = 0.3

_YEAR_ONLY = re.compile(r"^\d{4}$")
_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")


def query_tokens(query: list[str]) -> list[str]:
    tokens = " ".join(query).lower().split()
    return list(dict.fromkeys(tokens))


def _match_ratio(tokens: list[str], text: str) -> float:
    if not tokens:
        return 0.0
    lowered = text.lower()
    return sum(1 for token in tokens if token in lowered) / len(tokens)


def parse_published_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    value = raw.strip()
    if not value:
        return None
    if _YEAR_ONLY.match(value):
        value = f"{value}-01-01"
    elif _YEAR_MONTH.match(value):
        value = f"{value}-01"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _domain_matches(domain: str, candidates: tuple[str, ...]) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in candidates)


class SourceScorer:
    """Relevance, freshness and credibility scoring for fetched records."""

    def __init__(
        self,
        *,
        high_credibility_domains: tuple[str, ...] = HIGH_CREDIBILITY_DOMAINS,
        medium_credibility_domains: tuple[str, ...] = MEDIUM_CREDIBILITY_DOMAINS,
    ):
        self.high_credibility_domains = tuple(d.lower() for d in high_credibility_domains)
        self.medium_credibility_domains = tuple(d.lower() for d in medium_credibility_domains)

    def relevance(self, record: SourceRecord, query: list[str]) -> float:
        tokens = query_tokens(query)
        base = _match_ratio(tokens, record.content_excerpt)
        title = _match_ratio(tokens, record.title)
        return min(1.0, base + title * TITLE_BOOST_WEIGHT)

    def freshness(self, published_date: str | None, now: datetime) -> float:
        published = parse_published_date(published_date)
        if published is None:
            return NEUTRAL_FRESHNESS
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        age_days = (now - published).total_seconds() / 86400
        for max_age, score in FRESHNESS_STEPS:
            if age_days < max_age:
                return score
        return FRESHNESS_FLOOR

    def credibility(self, domain: str, author: str | None) -> float:
        domain = domain.lower()
        if _domain_matches(domain, self.high_credibility_domains):
            score = HIGH_CREDIBILITY_SCORE
        elif _domain_matches(domain, self.medium_credibility_domains):
            score = MEDIUM_CREDIBILITY_SCORE
        else:
            score = DEFAULT_CREDIBILITY_SCORE
        if author and author.strip():
            score += AUTHOR_BONUS
        return min(score, 1.0)

    def score(self, record: SourceRecord, query: list[str], now: datetime) -> SourceRecord:
        """Return a copy of ``record`` with all three score fields filled in."""
        return record.model_copy(
            update={
                "relevance_score": self.relevance(record, query),
                "freshness_score": self.freshness(record.published_date, now),
                "credibility_score": self.credibility(record.domain, record.author),
            }
        )


def rank(records: list[SourceRecord]) -> list[SourceRecord]:
    """Order by combined score; ties keep fetch order."""
    return sorted(records, key=lambda record: -record.combined_score)

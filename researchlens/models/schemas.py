from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

TERM_DELIMITER = "|"

RELEVANCE_WEIGHT = 0.6
FRESHNESS_WEIGHT = 0.3
CREDIBILITY_WEIGHT = 0.1


def normalize_terms(terms: list[str]) -> str:
    """Order-independent cache key for a term set."""
    cleaned = [" ".join(term.split()).lower() for term in terms]
    return TERM_DELIMITER.join(sorted(t for t in cleaned if t))


class ResearchStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceRecord(BaseModel):
    url: str
    title: str
    domain: str = ""
    content_excerpt: str = ""
    published_date: str | None = None
    author: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    freshness_score: float = Field(default=0.5, ge=0.0, le=1.0)
    credibility_score: float = Field(default=0.5, ge=0.0, le=1.0)

    @property
    def combined_score(self) -> float:
        return (
            self.relevance_score * RELEVANCE_WEIGHT
            + self.freshness_score * FRESHNESS_WEIGHT
            + self.credibility_score * CREDIBILITY_WEIGHT
        )


class ResultSet(BaseModel):
    """One source's records for a query, deduplicated by url."""

    source: str
    records: list[SourceRecord] = Field(default_factory=list)
    query: list[str] = Field(default_factory=list)
    created_at: float

    @model_validator(mode="after")
    def _dedupe_records(self) -> "ResultSet":
        seen: set[str] = set()
        unique: list[SourceRecord] = []
        for record in self.records:
            if record.url in seen:
                continue
            seen.add(record.url)
            unique.append(record)
        self.records = unique
        return self

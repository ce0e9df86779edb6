from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from researchlens.models.schemas import ResultSet, SourceRecord

SourceKind = Literal["web", "pubmed"]


@dataclass(frozen=True, slots=True)
class SourceSpec:
    name: str
    target: str
    kind: SourceKind = "web"


@dataclass(slots=True)
class FetchedContent:
    """Raw item returned by a content fetcher before scoring."""

    url: str
    title: str
    content: str
    published_date: str | None = None
    author: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SourceFailure:
    source: str
    reason: str
    error_type: str
    attempts: int = 1


@dataclass(slots=True)
class AggregateResult:
    result_sets: list[ResultSet] = field(default_factory=list)
    requested: int = 0
    failures: list[SourceFailure] = field(default_factory=list)
    from_cache: bool = False
    fallback: bool = False

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def succeeded_count(self) -> int:
        return len(self.result_sets)

    def records(self) -> list[SourceRecord]:
        return [record for result_set in self.result_sets for record in result_set.records]

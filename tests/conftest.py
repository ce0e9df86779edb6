from __future__ import annotations

import asyncio
from typing import Any

import pytest

from researchlens.models.schemas import ResultSet, SourceRecord
from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec
from researchlens.services.persistence import InMemoryBackend

START_TIME = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """Scripted content fetcher.

    ``outcomes`` maps a source name to a list of per-call outcomes; each is a
    list of items or an exception to raise. The last outcome repeats.
    """

    def __init__(
        self,
        outcomes: dict[str, list[Any]] | None = None,
        *,
        batch: Any = None,
        delay: float = 0.0,
    ):
        self.outcomes = outcomes or {}
        self.batch = batch
        self.delay = delay
        self.calls: dict[str, int] = {}
        self.batch_calls = 0
        self.active = 0
        self.max_active = 0

    @property
    def supports_batch(self) -> bool:
        return self.batch is not None

    async def fetch_content(self, source: SourceSpec) -> list[FetchedContent]:
        count = self.calls.get(source.name, 0)
        self.calls[source.name] = count + 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            scripted = self.outcomes.get(source.name, [[]])
            outcome = scripted[min(count, len(scripted) - 1)]
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.active -= 1

    async def fetch_batch(self, sources: list[SourceSpec]) -> dict[str, list[FetchedContent]]:
        self.batch_calls += 1
        if isinstance(self.batch, BaseException):
            raise self.batch
        return {s.name: self.batch[s.name] for s in sources if s.name in self.batch}


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_item(url: str, *, title: str = "", content: str = "body text", **kwargs: Any) -> FetchedContent:
    return FetchedContent(url=url, title=title or url, content=content, **kwargs)


def make_result_set(source: str, urls: list[str], *, created_at: float = START_TIME) -> ResultSet:
    return ResultSet(
        source=source,
        records=[SourceRecord(url=url, title=f"Title for {url}") for url in urls],
        query=["test"],
        created_at=created_at,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()

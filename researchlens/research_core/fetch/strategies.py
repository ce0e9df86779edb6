"""Batch and individual fetch strategies with transient-error retry."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec
from researchlens.tools.content_fetcher import (
    ContentFetcher,
    MalformedResponseError,
    classify_error,
)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class FetchPhase(str, Enum):
    BATCH = "batch"
    INDIVIDUAL = "individual"
    DONE = "done"


def initial_phase(*, batch_supported: bool, source_count: int) -> FetchPhase:
    if source_count == 0:
        return FetchPhase.DONE
    if batch_supported and source_count > 1:
        return FetchPhase.BATCH
    return FetchPhase.INDIVIDUAL


def next_phase(phase: FetchPhase, *, remaining: int) -> FetchPhase:
    """Advance after a phase has run; anything the batch left unresolved goes individual."""
    if phase is FetchPhase.BATCH and remaining > 0:
        return FetchPhase.INDIVIDUAL
    return FetchPhase.DONE


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
) -> tuple[T, int]:
    """Run ``fn`` retrying transient errors with exponential backoff.

    Returns the result and the number of attempts used. Non-retryable errors
    and the last transient error are raised as classified ``FetchError``s
    carrying ``attempts``.
    """
    max_attempts = max(int(policy.max_attempts), 1)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(), attempt
        except Exception as exc:
            error = classify_error(exc)
            error.attempts = attempt
            if not error.retryable or attempt >= max_attempts:
                if error is exc:
                    raise
                raise error from exc
        await sleep(policy.delay_for(attempt))


class BatchStrategy:
    """One call covering every source."""

    name = "batch"

    def __init__(
        self,
        fetcher: ContentFetcher,
        policy: RetryPolicy,
        *,
        timeout: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.policy = policy
        self.timeout = timeout
        self._sleep = sleep

    async def run(self, sources: list[SourceSpec]) -> tuple[dict[str, list[FetchedContent]], int]:
        async def attempt() -> dict[str, list[FetchedContent]]:
            results = await self.fetcher.fetch_batch(sources)
            if not isinstance(results, dict):
                raise MalformedResponseError("Batch fetch returned a non-mapping result")
            covered = {name: items for name, items in results.items() if items}
            if not covered:
                raise MalformedResponseError("Batch fetch returned no content")
            return covered

        return await asyncio.wait_for(
            call_with_retry(attempt, self.policy, sleep=self._sleep),
            timeout=self.timeout,
        )


class IndividualStrategy:
    """One call per source."""

    name = "individual"

    def __init__(
        self,
        fetcher: ContentFetcher,
        policy: RetryPolicy,
        *,
        timeout: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.policy = policy
        self.timeout = timeout
        self._sleep = sleep

    async def run(self, source: SourceSpec) -> tuple[list[FetchedContent], int]:
        async def attempt() -> list[FetchedContent]:
            items = await self.fetcher.fetch_content(source)
            if not items:
                raise MalformedResponseError(f"Empty result for {source.name}")
            return list(items)

        return await asyncio.wait_for(
            call_with_retry(attempt, self.policy, sleep=self._sleep),
            timeout=self.timeout,
        )

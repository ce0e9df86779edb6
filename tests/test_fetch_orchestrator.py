from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FakeFetcher, make_item
from researchlens.research_core.fetch.orchestrator import FetchOrchestrator
from researchlens.research_core.fetch.strategies import (
    FetchPhase,
    RetryPolicy,
    initial_phase,
    next_phase,
)
from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec
from researchlens.tools.content_fetcher import (
    CapabilityUnavailableError,
    FetchError,
    TransientFetchError,
)

FIXED_NOW = datetime(2024, 6, 15, tzinfo=timezone.utc)


def _orchestrator(fetcher, clock, sleep, **kwargs) -> FetchOrchestrator:
    kwargs.setdefault("max_parallel", 4)
    kwargs.setdefault("timeout_seconds", 5.0)
    kwargs.setdefault("retry_max", 3)
    return FetchOrchestrator(
        fetcher,
        clock=clock,
        now=lambda: FIXED_NOW,
        sleep=sleep,
        backoff_base_seconds=0.25,
        backoff_max_seconds=2.0,
        **kwargs,
    )


def _sources(*names: str) -> list[SourceSpec]:
    return [SourceSpec(name=name, target=f"https://{name.lower()}.example.com/") for name in names]


def test_initial_phase_transitions():
    assert initial_phase(batch_supported=True, source_count=0) is FetchPhase.DONE
    assert initial_phase(batch_supported=True, source_count=1) is FetchPhase.INDIVIDUAL
    assert initial_phase(batch_supported=True, source_count=3) is FetchPhase.BATCH
    assert initial_phase(batch_supported=False, source_count=3) is FetchPhase.INDIVIDUAL
    assert next_phase(FetchPhase.BATCH, remaining=2) is FetchPhase.INDIVIDUAL
    assert next_phase(FetchPhase.BATCH, remaining=0) is FetchPhase.DONE
    assert next_phase(FetchPhase.INDIVIDUAL, remaining=0) is FetchPhase.DONE


def test_retry_policy_delay_is_exponential_and_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=0.25, max_delay=1.0)
    assert [policy.delay_for(n) for n in range(1, 5)] == [0.25, 0.5, 1.0, 1.0]


@pytest.mark.asyncio
async def test_failed_sources_are_reported_not_raised(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "A": [[make_item("https://a.example.com/1")]],
            "B": [FetchError("HTTP 404")],
            "C": [[make_item("https://c.example.com/1")]],
        }
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["diabetes"], _sources("A", "B", "C"))

    assert result.requested == 3
    assert sorted(rs.source for rs in result.result_sets) == ["A", "C"]
    assert result.failed_count == 1
    failure = result.failures[0]
    assert failure.source == "B"
    assert failure.error_type == "FetchError"
    assert failure.attempts == 1
    assert fetcher.calls["B"] == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "A": [
                TransientFetchError("HTTP 503"),
                httpx.ConnectError("connection refused"),
                [make_item("https://a.example.com/1")],
            ]
        }
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert result.succeeded_count == 1
    assert fetcher.calls["A"] == 3
    assert no_sleep.delays == [0.25, 0.5]


@pytest.mark.asyncio
async def test_transient_errors_give_up_after_retry_max(clock, no_sleep):
    fetcher = FakeFetcher({"A": [TransientFetchError("HTTP 502")]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep, retry_max=3)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert result.result_sets == []
    assert fetcher.calls["A"] == 3
    assert result.failures[0].attempts == 3
    assert result.failures[0].error_type == "TransientFetchError"


@pytest.mark.asyncio
async def test_empty_result_is_malformed_and_not_retried(clock, no_sleep):
    fetcher = FakeFetcher({"A": [[]]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert fetcher.calls["A"] == 1
    assert no_sleep.delays == []
    assert result.failures[0].error_type == "MalformedResponseError"


@pytest.mark.asyncio
async def test_unexpected_exception_is_classified(clock, no_sleep):
    fetcher = FakeFetcher({"A": [KeyError("idlist")]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert fetcher.calls["A"] == 1
    assert result.failures[0].error_type == "MalformedResponseError"


@pytest.mark.asyncio
async def test_batch_covers_what_it_can_and_rest_goes_individual(clock, no_sleep):
    fetcher = FakeFetcher(
        {"B": [[make_item("https://b.example.com/1")]]},
        batch={"A": [make_item("https://a.example.com/1")]},
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A", "B"))

    assert fetcher.batch_calls == 1
    assert "A" not in fetcher.calls
    assert fetcher.calls["B"] == 1
    assert sorted(rs.source for rs in result.result_sets) == ["A", "B"]


@pytest.mark.asyncio
async def test_batch_failure_falls_back_to_individual(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "A": [[make_item("https://a.example.com/1")]],
            "B": [[make_item("https://b.example.com/1")]],
        },
        batch=CapabilityUnavailableError("HTTP 404"),
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A", "B"))

    assert fetcher.batch_calls == 1
    assert no_sleep.delays == []
    assert result.succeeded_count == 2
    assert result.failures == []


@pytest.mark.asyncio
async def test_single_source_skips_batch(clock, no_sleep):
    fetcher = FakeFetcher(
        {"A": [[make_item("https://a.example.com/1")]]},
        batch={"A": [make_item("https://a.example.com/batch")]},
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert fetcher.batch_calls == 0
    assert result.result_sets[0].records[0].url == "https://a.example.com/1"


@pytest.mark.asyncio
async def test_slow_source_times_out(clock):
    fetcher = FakeFetcher(
        {
            "Slow": [[make_item("https://slow.example.com/1")]],
        },
        delay=1.0,
    )
    orchestrator = FetchOrchestrator(
        fetcher,
        clock=clock,
        timeout_seconds=0.05,
        retry_max=1,
    )

    result = await orchestrator.fetch(["q"], _sources("Slow"))

    assert result.result_sets == []
    assert result.failures[0].error_type == "TransientFetchError"


@pytest.mark.asyncio
async def test_parallelism_is_bounded(clock, no_sleep):
    names = [f"S{i}" for i in range(6)]
    fetcher = FakeFetcher(
        {name: [[make_item(f"https://{name.lower()}.example.com/")]] for name in names},
        delay=0.01,
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep, max_parallel=2)

    result = await orchestrator.fetch(["q"], _sources(*names))

    assert result.succeeded_count == 6
    assert fetcher.max_active <= 2


@pytest.mark.asyncio
async def test_records_are_scored_and_stamped(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "Nature": [
                [
                    make_item(
                        "https://www.nature.com/articles/1",
                        title="Blood sugar study",
                        content="Blood sugar control in diabetes",
                        author="Smith",
                        published_date="2024-06-14T12:00:00Z",
                    )
                ]
            ]
        }
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep, excerpt_max_chars=10)

    result = await orchestrator.fetch(["diabetes", "blood sugar"], _sources("Nature"))

    record = result.result_sets[0].records[0]
    assert record.domain == "nature.com"
    assert record.content_excerpt == "Blood suga"
    assert record.credibility_score == pytest.approx(1.0)
    assert record.freshness_score == pytest.approx(1.0)
    assert 0.0 < record.relevance_score <= 1.0
    assert result.result_sets[0].created_at == clock.now
    assert result.result_sets[0].query == ["diabetes", "blood sugar"]


@pytest.mark.asyncio
async def test_duplicate_source_names_fetch_once(clock, no_sleep):
    fetcher = FakeFetcher({"A": [[make_item("https://a.example.com/1")]]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A") + _sources("A"))

    assert result.requested == 1
    assert fetcher.calls["A"] == 1


@pytest.mark.asyncio
async def test_no_sources_returns_empty_result(clock, no_sleep):
    fetcher = FakeFetcher()
    result = await _orchestrator(fetcher, clock, no_sleep).fetch(["q"], [])

    assert result.requested == 0
    assert result.result_sets == []
    assert fetcher.calls == {}


@pytest.mark.asyncio
async def test_progress_callback_reports_each_success(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "A": [[make_item("https://a.example.com/1")]],
            "B": [FetchError("HTTP 403")],
            "C": [[make_item("https://c.example.com/1")]],
        }
    )
    seen: list[str] = []

    def on_progress(source, result_set):
        seen.append(source)
        if source == "A":
            raise RuntimeError("listener bug")

    result = await _orchestrator(fetcher, clock, no_sleep).fetch(
        ["q"], _sources("A", "B", "C"), on_progress=on_progress
    )

    assert sorted(seen) == ["A", "C"]
    assert result.succeeded_count == 2


class _Sessions:
    def __init__(self, *, fail_release: bool = False):
        self.fail_release = fail_release
        self.acquired = 0
        self.released: list[str] = []
        self.stopped: list[str] = []

    async def acquire(self) -> str:
        self.acquired += 1
        return f"session-{self.acquired}"

    async def release(self, session_id: str) -> None:
        if self.fail_release:
            raise RuntimeError("release endpoint down")
        self.released.append(session_id)

    async def stop(self, session_id: str) -> None:
        self.stopped.append(session_id)


@pytest.mark.asyncio
async def test_session_is_released_after_fetch(clock, no_sleep):
    sessions = _Sessions()
    fetcher = FakeFetcher({"A": [FetchError("HTTP 403")]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep, session_provider=sessions)

    await orchestrator.fetch(["q"], _sources("A"))

    assert sessions.released == ["session-1"]
    assert sessions.stopped == []


@pytest.mark.asyncio
async def test_failed_release_stops_session(clock, no_sleep):
    sessions = _Sessions(fail_release=True)
    fetcher = FakeFetcher({"A": [[make_item("https://a.example.com/1")]]})
    orchestrator = _orchestrator(fetcher, clock, no_sleep, session_provider=sessions)

    result = await orchestrator.fetch(["q"], _sources("A"))

    assert result.succeeded_count == 1
    assert sessions.stopped == ["session-1"]


@pytest.mark.asyncio
async def test_session_is_released_when_cancelled(clock, no_sleep):
    sessions = _Sessions()
    fetcher = FakeFetcher({"A": [[make_item("https://a.example.com/1")]]}, delay=10.0)
    orchestrator = _orchestrator(
        fetcher, clock, no_sleep, session_provider=sessions, timeout_seconds=30.0
    )

    task = asyncio.create_task(orchestrator.fetch(["q"], _sources("A")))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sessions.released == ["session-1"]


@pytest.mark.asyncio
async def test_unusable_item_fails_only_its_source(clock, no_sleep):
    fetcher = FakeFetcher(
        {
            "Good": [[make_item("https://good.example.com/1")]],
            "NoContent": [[FetchedContent(url="https://bad.example.com/1", title="t", content=None)]],
            "NoMetadata": [
                [FetchedContent(url="https://bad.example.com/2", title="t", content="x", metadata=None)]
            ],
        }
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("Good", "NoContent", "NoMetadata"))

    assert result.succeeded_count == 1
    assert result.result_sets[0].source == "Good"
    assert sorted(f.source for f in result.failures) == ["NoContent", "NoMetadata"]
    assert {f.error_type for f in result.failures} == {"MalformedResponseError"}
    assert fetcher.calls["NoContent"] == 1


@pytest.mark.asyncio
async def test_unusable_batch_item_is_fetched_individually(clock, no_sleep):
    fetcher = FakeFetcher(
        {"A": [[make_item("https://a.example.com/individual")]]},
        batch={
            "A": [FetchedContent(url="https://a.example.com/batch", title="t", content=None)],
            "B": [make_item("https://b.example.com/1")],
        },
    )
    orchestrator = _orchestrator(fetcher, clock, no_sleep)

    result = await orchestrator.fetch(["q"], _sources("A", "B"))

    assert result.failures == []
    by_source = {rs.source: rs for rs in result.result_sets}
    assert by_source["A"].records[0].url == "https://a.example.com/individual"
    assert fetcher.calls == {"A": 1}

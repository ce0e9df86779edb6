from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from loguru import logger

from researchlens.config import settings
from researchlens.models.schemas import ResultSet, SourceRecord
from researchlens.research_core.fetch.strategies import (
    BatchStrategy,
    FetchPhase,
    IndividualStrategy,
    RetryPolicy,
    initial_phase,
    next_phase,
)
from researchlens.research_core.models.interfaces import (
    AggregateResult,
    FetchedContent,
    SourceFailure,
    SourceSpec,
)
from researchlens.research_core.scoring.service import SourceScorer
from researchlens.services import logger as log_service
from researchlens.tools import web_utils
from researchlens.tools.content_fetcher import (
    ContentFetcher,
    MalformedResponseError,
    classify_error,
)

ProgressCallback = Callable[[str, ResultSet], None]


class SessionProvider(Protocol):
    """Lifecycle hook for a persistent session (e.g. a remote browser) held for one fetch.

    The session id is not passed to the fetcher; the orchestrator only
    guarantees it is released (or stopped) once the fetch settles.
    """

    async def acquire(self) -> str: ...

    async def release(self, session_id: str) -> None: ...

    async def stop(self, session_id: str) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FetchOrchestrator:
    """Concurrent multi-source fetch with bounded parallelism.

    Tries one batch call when the fetcher supports it, then fetches whatever
    the batch did not cover one source at a time. Waits for every source to
    settle; a failing source is reported in ``AggregateResult.failures`` and
    never raises.
    """

    def __init__(
        self,
        fetcher: ContentFetcher,
        *,
        scorer: SourceScorer | None = None,
        max_parallel: int | None = None,
        timeout_seconds: float | None = None,
        retry_max: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        excerpt_max_chars: int | None = None,
        session_provider: SessionProvider | None = None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.scorer = scorer if scorer is not None else SourceScorer()
        self.max_parallel = max(int(max_parallel or settings.fetch_max_parallel), 1)
        self.timeout_seconds = float(timeout_seconds or settings.fetch_timeout_seconds)
        self.excerpt_max_chars = int(excerpt_max_chars or settings.excerpt_max_chars)
        self.session_provider = session_provider
        self._clock = clock
        self._now = now

        policy = RetryPolicy(
            max_attempts=int(retry_max or settings.fetch_retry_max),
            base_delay=float(
                settings.fetch_backoff_base_seconds
                if backoff_base_seconds is None
                else backoff_base_seconds
            ),
            max_delay=float(
                settings.fetch_backoff_max_seconds
                if backoff_max_seconds is None
                else backoff_max_seconds
            ),
        )
        self.retry_policy = policy
        self._batch = BatchStrategy(fetcher, policy, timeout=self.timeout_seconds, sleep=sleep)
        self._individual = IndividualStrategy(
            fetcher, policy, timeout=self.timeout_seconds, sleep=sleep
        )

    async def fetch(
        self,
        query: list[str],
        sources: list[SourceSpec],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        unique_sources = self._dedupe_sources(sources)
        result = AggregateResult(requested=len(unique_sources))
        if not unique_sources:
            return result

        started = time.monotonic()
        session_id = await self._acquire_session()
        try:
            resolved, failures = await self._run(query, unique_sources, on_progress)
        finally:
            await self._release_session(session_id)

        result.result_sets = list(resolved.values())
        result.failures = failures
        log_service.log_event(
            "fetch_complete",
            f"{result.succeeded_count}/{result.requested} sources succeeded",
            query=query,
            failed=[failure.source for failure in failures],
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def _run(
        self,
        query: list[str],
        sources: list[SourceSpec],
        on_progress: ProgressCallback | None,
    ) -> tuple[dict[str, ResultSet], list[SourceFailure]]:
        resolved: dict[str, ResultSet] = {}
        failures: list[SourceFailure] = []
        pending = list(sources)
        phase = initial_phase(
            batch_supported=bool(getattr(self.fetcher, "supports_batch", False)),
            source_count=len(pending),
        )

        if phase is FetchPhase.BATCH:
            started = time.monotonic()
            try:
                batch_items, attempts = await self._batch.run(pending)
            except Exception as exc:
                error = classify_error(exc)
                logger.warning(
                    f"Batch fetch failed ({type(error).__name__}: {error}); "
                    "falling back to individual fetches"
                )
                batch_items, attempts = {}, getattr(error, "attempts", 1)

            for source in pending:
                items = batch_items.get(source.name)
                if not items:
                    continue
                try:
                    result_set = self._build_checked(source, items, query)
                except MalformedResponseError as exc:
                    logger.warning(
                        f"Batch item for {source.name} unusable, fetching individually: {exc}"
                    )
                    continue
                resolved[source.name] = result_set
                log_service.log_fetch(
                    source.name,
                    "success",
                    attempts=attempts,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    strategy=self._batch.name,
                )
                self._notify(on_progress, source.name, result_set)

            pending = [source for source in pending if source.name not in resolved]
            phase = next_phase(phase, remaining=len(pending))

        if phase is FetchPhase.INDIVIDUAL:
            semaphore = asyncio.Semaphore(self.max_parallel)

            async def run_one(source: SourceSpec) -> None:
                async with semaphore:
                    started = time.monotonic()
                    try:
                        items, attempts = await self._individual.run(source)
                        result_set = self._build_checked(source, items, query)
                    except Exception as exc:
                        error = classify_error(exc)
                        attempts = getattr(error, "attempts", 1)
                        reason = str(error) or type(error).__name__
                        failures.append(
                            SourceFailure(
                                source=source.name,
                                reason=reason,
                                error_type=type(error).__name__,
                                attempts=attempts,
                            )
                        )
                        log_service.log_fetch(
                            source.name,
                            "failed",
                            attempts=attempts,
                            duration_ms=int((time.monotonic() - started) * 1000),
                            strategy=self._individual.name,
                            error=reason,
                        )
                        return

                resolved[source.name] = result_set
                log_service.log_fetch(
                    source.name,
                    "success",
                    attempts=attempts,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    strategy=self._individual.name,
                )
                self._notify(on_progress, source.name, result_set)

            await asyncio.gather(*(run_one(source) for source in pending))

        return resolved, failures

    def _build_checked(
        self,
        source: SourceSpec,
        items: list[FetchedContent],
        query: list[str],
    ) -> ResultSet:
        try:
            return self._build_result_set(source, items, query)
        except (AttributeError, TypeError, ValueError) as exc:
            raise MalformedResponseError(f"Unusable item from {source.name}: {exc}") from exc

    def _build_result_set(
        self,
        source: SourceSpec,
        items: list[FetchedContent],
        query: list[str],
    ) -> ResultSet:
        now = self._now()
        records: list[SourceRecord] = []
        for item in items:
            url = item.url or source.target
            record = SourceRecord(
                url=url,
                title=item.title or url,
                domain=web_utils.extract_domain(url),
                content_excerpt=item.content[: self.excerpt_max_chars],
                published_date=item.published_date,
                author=item.author,
                metadata=dict(item.metadata),
            )
            records.append(self.scorer.score(record, query, now))
        return ResultSet(
            source=source.name,
            records=records,
            query=list(query),
            created_at=self._clock(),
        )

    @staticmethod
    def _dedupe_sources(sources: list[SourceSpec]) -> list[SourceSpec]:
        unique: dict[str, SourceSpec] = {}
        for source in sources:
            if source.name in unique:
                logger.warning(f"Duplicate source name '{source.name}' ignored")
                continue
            unique[source.name] = source
        return list(unique.values())

    @staticmethod
    def _notify(
        on_progress: ProgressCallback | None,
        source_name: str,
        result_set: ResultSet,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(source_name, result_set)
        except Exception as exc:
            logger.warning(f"Progress callback failed for {source_name}: {exc}")

    async def _acquire_session(self) -> str | None:
        if self.session_provider is None:
            return None
        try:
            session_id = await self.session_provider.acquire()
        except Exception as exc:
            logger.warning(f"Session acquire failed, continuing without a session: {exc}")
            return None
        logger.debug(f"Using fetch session {session_id}")
        return session_id

    async def _release_session(self, session_id: str | None) -> None:
        if self.session_provider is None or session_id is None:
            return
        try:
            await self.session_provider.release(session_id)
            return
        except Exception as exc:
            logger.warning(f"Session release failed for {session_id}, stopping directly: {exc}")
        try:
            await self.session_provider.stop(session_id)
        except Exception as exc:
            logger.warning(f"Failed to stop session {session_id}: {exc}")

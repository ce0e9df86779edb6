"""Cache-first research: term cache, fetch orchestration and entity research."""
from __future__ import annotations

import asyncio
import time
from typing import Callable

from loguru import logger

from researchlens.config import Settings, settings
from researchlens.llm_client import TextModel, text_model
from researchlens.models.memory import Marker
from researchlens.models.schemas import ResultSet, SourceRecord
from researchlens.research_core.fetch.orchestrator import FetchOrchestrator, ProgressCallback
from researchlens.research_core.models.interfaces import AggregateResult, SourceSpec
from researchlens.research_core.scoring.service import SourceScorer
from researchlens.services import logger as log_service
from researchlens.services.entity_research_store import EntityResearchRecord, EntityResearchStore
from researchlens.services.persistence import PersistenceBackend, build_backend
from researchlens.services.query_generator import generate_research_queries
from researchlens.services.term_cache import TermCache
from researchlens.tools import pubmed_search, web_utils
from researchlens.tools.content_fetcher import RoutingFetcher
from researchlens.tools.web_fetcher import WebPageFetcher

SourceBuilder = Callable[[list[str]], list[SourceSpec]]


def default_sources(terms: list[str], urls: list[str] | tuple[str, ...] = ()) -> list[SourceSpec]:
    topic = " ".join(terms)
    sources = [SourceSpec(name="PubMed", target=topic, kind="pubmed")]
    for url in urls:
        if web_utils.is_valid_url(url):
            sources.append(SourceSpec(name=web_utils.extract_domain(url) or url, target=url))
    return sources


def fallback_result_set(terms: list[str], sources: list[SourceSpec], created_at: float) -> ResultSet:
    """A single "search directly" pointer used when every source failed."""
    topic = " ".join(terms)
    primary = sources[0] if sources else SourceSpec(name="PubMed", target=topic, kind="pubmed")
    if primary.kind == "pubmed":
        item = pubmed_search.fallback_results(topic)[0]
        record = SourceRecord(
            url=item.url,
            title=item.title,
            domain=web_utils.extract_domain(item.url),
            content_excerpt=item.content,
            metadata=item.metadata,
        )
    else:
        record = SourceRecord(
            url=primary.target,
            title=f"Search {primary.name} directly: {topic}",
            domain=web_utils.extract_domain(primary.target),
            content_excerpt=f'No results could be fetched for "{topic}". Open the source directly.',
            metadata={"fallback": True},
        )
    return ResultSet(source=primary.name, records=[record], query=list(terms), created_at=created_at)


class ResearchService:
    def __init__(
        self,
        *,
        term_cache: TermCache,
        entity_store: EntityResearchStore,
        orchestrator: FetchOrchestrator,
        model: TextModel | None = None,
        source_builder: SourceBuilder = default_sources,
        clock: Callable[[], float] = time.time,
    ):
        self.term_cache = term_cache
        self.entity_store = entity_store
        self.orchestrator = orchestrator
        self.model = model
        self.source_builder = source_builder
        self._clock = clock

    async def search(
        self,
        terms: list[str],
        *,
        sources: list[SourceSpec] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        """Serve from the term cache, otherwise fetch, cache and return.

        Never raises for source failures. When every source fails the result
        is flagged ``fallback`` and carries one pointer record; it is not cached.
        """
        cached = self.term_cache.get(terms)
        if cached is not None:
            return AggregateResult(result_sets=cached, requested=len(cached), from_cache=True)

        specs = sources if sources is not None else self.source_builder(terms)
        result = await self.orchestrator.fetch(terms, specs, on_progress=on_progress)
        if result.result_sets:
            self.term_cache.put(terms, result.result_sets)
            return result

        logger.warning(f"All {result.requested} sources failed for {terms}; returning fallback")
        result.result_sets = [fallback_result_set(terms, specs, self._clock())]
        result.fallback = True
        return result

    async def research_entity(
        self,
        entity_id: str,
        markers: list[Marker],
        raw_text: str,
    ) -> EntityResearchRecord:
        """Run (or re-run) research for one uploaded document."""
        queries = await generate_research_queries(markers, raw_text, model=self.model)
        self.entity_store.mark_pending(entity_id, queries)
        log_service.log_event("entity_research_started", entity_id, queries=queries)

        results: list[ResultSet] = []
        try:
            for query in queries:
                outcome = await self.search([query])
                if not outcome.fallback:
                    results.extend(outcome.result_sets)
        except asyncio.CancelledError:
            self.entity_store.mark_failed(entity_id, queries)
            raise
        except Exception as exc:
            logger.exception(f"Research for {entity_id} failed: {exc}")
            return self.entity_store.mark_failed(entity_id, queries)

        record = self.entity_store.complete(entity_id, queries, results)
        log_service.log_event(
            "entity_research_finished",
            entity_id,
            status=record.status.value,
            result_sets=len(record.results),
        )
        return record

    def context_for(self, entity_ids: list[str]) -> list[ResultSet]:
        return self.entity_store.get_many(entity_ids)

    async def prefetch(self, topics: list[str]) -> list[ResultSet]:
        """Warm the term cache with the given topics, skipping failures."""
        warmed: list[ResultSet] = []
        for topic in topics:
            try:
                outcome = await self.search([topic])
            except Exception as exc:
                logger.warning(f"Failed to pre-fetch {topic}: {exc}")
                continue
            if outcome.fallback:
                logger.warning(f"Pre-fetch found nothing for {topic}")
                continue
            warmed.extend(outcome.result_sets)
            logger.info(f"Pre-fetched: {topic}")
        return warmed

    def evict_expired(self) -> int:
        return self.term_cache.evict()


def build_service(
    config: Settings | None = None,
    *,
    backend: PersistenceBackend | None = None,
) -> ResearchService:
    config = config or settings
    backend = backend or build_backend(config)
    fetcher = RoutingFetcher(
        {
            "pubmed": pubmed_search.PubMedFetcher(
                base_url=config.pubmed_base_url,
                max_results=config.pubmed_max_results,
                abstract_max_chars=config.pubmed_abstract_max_chars,
            ),
            "web": WebPageFetcher(
                batch_endpoint=config.web_batch_endpoint,
                api_key=config.web_fetch_api_key,
            ),
        }
    )
    orchestrator = FetchOrchestrator(
        fetcher,
        scorer=SourceScorer(),
        max_parallel=config.fetch_max_parallel,
        timeout_seconds=config.fetch_timeout_seconds,
        retry_max=config.fetch_retry_max,
        backoff_base_seconds=config.fetch_backoff_base_seconds,
        backoff_max_seconds=config.fetch_backoff_max_seconds,
        excerpt_max_chars=config.excerpt_max_chars,
    )
    return ResearchService(
        term_cache=TermCache(
            backend,
            max_entries=config.term_cache_max_entries,
            ttl_seconds=config.term_cache_ttl_hours * 3600,
        ),
        entity_store=EntityResearchStore(
            backend,
            ttl_seconds=config.entity_research_ttl_hours * 3600,
        ),
        orchestrator=orchestrator,
        model=text_model(),
    )

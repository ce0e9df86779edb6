from __future__ import annotations

import time
from typing import Callable

from loguru import logger
from pydantic import BaseModel, Field

from researchlens.config import settings
from researchlens.models.schemas import ResearchStatus, ResultSet
from researchlens.services import logger as log_service
from researchlens.services.persistence import PersistenceBackend, load_payload, save_payload

ENTITY_RESEARCH_VERSION = 1
NAMESPACE = "entity_research"

TERMINAL_STATUSES = {ResearchStatus.COMPLETED, ResearchStatus.FAILED}


class EntityResearchRecord(BaseModel):
    entity_id: str
    queries: list[str] = Field(default_factory=list)
    status: ResearchStatus
    results: list[ResultSet] = Field(default_factory=list)
    timestamp: float
    updated_at: float


class EntityResearchPayload(BaseModel):
    schema_version: int = ENTITY_RESEARCH_VERSION
    records: dict[str, EntityResearchRecord] = Field(default_factory=dict)


class EntityResearchStore:
    """Per-entity research status and results.

    Lifecycle per entity: absent -> pending -> completed | failed. Completed
    and failed are terminal; ``mark_pending`` starts a fresh run that replaces
    the old record. Records expire ``ttl_seconds`` after creation and then read
    as absent.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.ttl_seconds = float(
            ttl_seconds if ttl_seconds is not None else settings.entity_research_ttl_hours * 3600
        )
        self._clock = clock
        payload = load_payload(
            backend, NAMESPACE, EntityResearchPayload, version=ENTITY_RESEARCH_VERSION
        )
        self._records: dict[str, EntityResearchRecord] = payload.records if payload else {}

    def mark_pending(self, entity_id: str, queries: list[str]) -> EntityResearchRecord:
        now = self._clock()
        record = EntityResearchRecord(
            entity_id=entity_id,
            queries=list(queries),
            status=ResearchStatus.PENDING,
            timestamp=now,
            updated_at=now,
        )
        self._records[entity_id] = record
        self._save("mark_pending", entity_id, record.status)
        return record

    def complete(
        self,
        entity_id: str,
        queries: list[str],
        results: list[ResultSet],
    ) -> EntityResearchRecord:
        """Finish a run with results; a run with no records counts as failed."""
        non_empty = [result_set for result_set in results if result_set.records]
        if not non_empty:
            logger.warning(f"Research for {entity_id} completed with no results; marking failed")
            return self.mark_failed(entity_id, queries)
        return self._finish(entity_id, queries, ResearchStatus.COMPLETED, non_empty)

    def mark_failed(self, entity_id: str, queries: list[str]) -> EntityResearchRecord:
        return self._finish(entity_id, queries, ResearchStatus.FAILED, [])

    def get(self, entity_id: str) -> EntityResearchRecord | None:
        record = self._records.get(entity_id)
        if record is None:
            return None
        if self._is_expired(record):
            del self._records[entity_id]
            self._save("expire", entity_id, record.status)
            return None
        return record

    def get_many(self, entity_ids: list[str]) -> list[ResultSet]:
        """Completed result sets for the given entities, one per source name."""
        unique: dict[str, ResultSet] = {}
        for entity_id in entity_ids:
            record = self.get(entity_id)
            if record is None or record.status is not ResearchStatus.COMPLETED:
                continue
            for result_set in record.results:
                if result_set.records and result_set.source not in unique:
                    unique[result_set.source] = result_set
        return list(unique.values())

    def has_pending(self, entity_ids: list[str]) -> bool:
        return any(
            (record := self.get(entity_id)) is not None
            and record.status is ResearchStatus.PENDING
            for entity_id in entity_ids
        )

    def clear(self, entity_id: str) -> None:
        if self._records.pop(entity_id, None) is not None:
            self._save("clear", entity_id, None)

    def clear_all(self) -> None:
        self._records = {}
        self.backend.clear(NAMESPACE)

    def _finish(
        self,
        entity_id: str,
        queries: list[str],
        status: ResearchStatus,
        results: list[ResultSet],
    ) -> EntityResearchRecord:
        existing = self.get(entity_id)
        if existing is not None and existing.status in TERMINAL_STATUSES:
            logger.warning(
                f"Research for {entity_id} already {existing.status.value}; "
                f"ignoring transition to {status.value}"
            )
            return existing

        now = self._clock()
        record = EntityResearchRecord(
            entity_id=entity_id,
            queries=list(queries),
            status=status,
            results=results,
            timestamp=existing.timestamp if existing is not None else now,
            updated_at=now,
        )
        self._records[entity_id] = record
        self._save(status.value, entity_id, status)
        return record

    def _is_expired(self, record: EntityResearchRecord) -> bool:
        return self._clock() - record.timestamp > self.ttl_seconds

    def _save(self, operation: str, entity_id: str, status: ResearchStatus | None) -> None:
        save_payload(self.backend, NAMESPACE, EntityResearchPayload(records=self._records))
        log_service.log_cache_operation(
            NAMESPACE,
            operation,
            entity_id,
            "stored",
            details=status.value if status else None,
        )

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, Field

from researchlens.config import settings
from researchlens.models.schemas import ResultSet, normalize_terms
from researchlens.services import logger as log_service
from researchlens.services.persistence import PersistenceBackend, load_payload, save_payload

TERM_CACHE_VERSION = 1
NAMESPACE = "term_cache"


class TermCacheEntry(BaseModel):
    query: str
    terms: list[str]
    results: list[ResultSet]
    timestamp: float
    expires_at: float


class TermCachePayload(BaseModel):
    schema_version: int = TERM_CACHE_VERSION
    entries: dict[str, TermCacheEntry] = Field(default_factory=dict)


@dataclass(slots=True)
class CacheStats:
    entries: int
    oldest_timestamp: float | None
    newest_timestamp: float | None


class TermCache:
    """Result sets keyed by an order-independent term set.

    Entries expire lazily on read. When the cache grows past ``max_entries``
    the entry with the oldest creation timestamp is dropped first, regardless
    of how recently it was read.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        max_entries: int | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.max_entries = max(int(max_entries or settings.term_cache_max_entries), 1)
        self.ttl_seconds = float(
            ttl_seconds if ttl_seconds is not None else settings.term_cache_ttl_hours * 3600
        )
        self._clock = clock
        payload = load_payload(backend, NAMESPACE, TermCachePayload, version=TERM_CACHE_VERSION)
        self._entries: dict[str, TermCacheEntry] = payload.entries if payload else {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, terms: list[str]) -> list[ResultSet] | None:
        key = normalize_terms(terms)
        entry = self._entries.get(key)
        if entry is None:
            log_service.log_cache_operation(NAMESPACE, "get", key, "miss")
            return None

        if self._clock() > entry.expires_at:
            del self._entries[key]
            self._save()
            log_service.log_cache_operation(NAMESPACE, "get", key, "expired")
            return None

        log_service.log_cache_operation(NAMESPACE, "get", key, "hit")
        return list(entry.results)

    def put(
        self,
        terms: list[str],
        results: list[ResultSet],
        ttl: float | None = None,
    ) -> None:
        key = normalize_terms(terms)
        now = self._clock()
        ttl_seconds = self.ttl_seconds if ttl is None else float(ttl)
        # Re-inserting moves the key to the end so insertion order tracks timestamps.
        self._entries.pop(key, None)
        self._entries[key] = TermCacheEntry(
            query=" ".join(terms),
            terms=list(terms),
            results=list(results),
            timestamp=now,
            expires_at=now + ttl_seconds,
        )
        evicted = self._evict_oldest()
        self._save()
        log_service.log_cache_operation(
            NAMESPACE,
            "put",
            key,
            "stored",
            details=f"evicted={evicted}" if evicted else None,
        )

    def evict(self) -> int:
        """Drop every expired entry. Idempotent."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            self._save()
            log_service.log_cache_operation(
                NAMESPACE, "evict", "*", "removed", details=f"count={len(expired)}"
            )
        return len(expired)

    def clear(self) -> None:
        self._entries = {}
        self.backend.clear(NAMESPACE)

    def stats(self) -> CacheStats:
        if not self._entries:
            return CacheStats(entries=0, oldest_timestamp=None, newest_timestamp=None)
        timestamps = [entry.timestamp for entry in self._entries.values()]
        return CacheStats(
            entries=len(self._entries),
            oldest_timestamp=min(timestamps),
            newest_timestamp=max(timestamps),
        )

    def _evict_oldest(self) -> list[str]:
        evicted: list[str] = []
        while len(self._entries) > self.max_entries:
            oldest_key = min(self._entries, key=lambda k: self._entries[k].timestamp)
            del self._entries[oldest_key]
            evicted.append(oldest_key)
        return evicted

    def _save(self) -> None:
        save_payload(self.backend, NAMESPACE, TermCachePayload(entries=self._entries))

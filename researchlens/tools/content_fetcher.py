"""Fetch boundary: the capability protocol and its error taxonomy."""
from __future__ import annotations

import asyncio
import json
from typing import Protocol

import httpx

from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec


class FetchError(Exception):
    """A source could not be fetched; not retried."""

    retryable = False
    attempts = 1


class TransientFetchError(FetchError):
    """Timeouts, 5xx responses and connection failures."""

    retryable = True


class MalformedResponseError(FetchError):
    """Unexpected schema or an empty payload where content was expected."""


class CapabilityUnavailableError(FetchError):
    """The call shape (e.g. batch) is not supported by the capability."""


RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
UNSUPPORTED_STATUS_CODES = {402, 404, 405, 501}


class ContentFetcher(Protocol):
    @property
    def supports_batch(self) -> bool: ...

    async def fetch_content(self, source: SourceSpec) -> list[FetchedContent]: ...

    async def fetch_batch(
        self, sources: list[SourceSpec]
    ) -> dict[str, list[FetchedContent]]: ...


def classify_error(exc: BaseException) -> FetchError:
    """Map an arbitrary exception onto the fetch error taxonomy."""
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return TransientFetchError(str(exc) or type(exc).__name__)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS_CODES:
            return TransientFetchError(f"HTTP {status}")
        return FetchError(f"HTTP {status}")
    if isinstance(exc, (json.JSONDecodeError, KeyError, TypeError, ValueError)):
        return MalformedResponseError(str(exc) or type(exc).__name__)
    return FetchError(str(exc) or type(exc).__name__)


class RoutingFetcher:
    """Dispatches each source to the fetcher registered for its kind."""

    def __init__(self, fetchers: dict[str, ContentFetcher]):
        self._fetchers = dict(fetchers)

    @property
    def supports_batch(self) -> bool:
        return any(fetcher.supports_batch for fetcher in self._fetchers.values())

    def _fetcher_for(self, source: SourceSpec) -> ContentFetcher:
        fetcher = self._fetchers.get(source.kind)
        if fetcher is None:
            raise CapabilityUnavailableError(f"No fetcher registered for kind '{source.kind}'")
        return fetcher

    async def fetch_content(self, source: SourceSpec) -> list[FetchedContent]:
        return await self._fetcher_for(source).fetch_content(source)

    async def fetch_batch(self, sources: list[SourceSpec]) -> dict[str, list[FetchedContent]]:
        """Batch-fetch the sources whose fetcher supports it.

        Sources routed to a fetcher without batch support are simply absent
        from the returned mapping.
        """
        by_kind: dict[str, list[SourceSpec]] = {}
        for source in sources:
            fetcher = self._fetchers.get(source.kind)
            if fetcher is not None and fetcher.supports_batch:
                by_kind.setdefault(source.kind, []).append(source)
        if not by_kind:
            raise CapabilityUnavailableError("No registered fetcher supports batch calls")

        merged: dict[str, list[FetchedContent]] = {}
        for kind, group in by_kind.items():
            merged.update(await self._fetchers[kind].fetch_batch(group))
        return merged

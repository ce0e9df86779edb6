from __future__ import annotations

from typing import Any

import httpx
from bs4 import BeautifulSoup

from researchlens.config import settings
from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec
from researchlens.tools import web_utils
from researchlens.tools.content_fetcher import (
    UNSUPPORTED_STATUS_CODES,
    CapabilityUnavailableError,
    MalformedResponseError,
    classify_error,
)

USER_AGENT = "ResearchLensBot/1.0 (+https://example.local)"

AUTHOR_META_KEYS = ("author", "article:author", "citation_author", "dc.creator")
DATE_META_KEYS = (
    "article:published_time",
    "citation_publication_date",
    "date",
    "dc.date",
    "pubdate",
)
STRIP_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside")


def _meta_value(soup: BeautifulSoup, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        tag = soup.find("meta", attrs={"name": key}) or soup.find("meta", attrs={"property": key})
        if tag is not None:
            value = str(tag.get("content") or "").strip()
            if value:
                return value
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_html(url: str, html: str, *, fallback_title: str = "") -> FetchedContent:
    """Extract title, readable text and attribution metadata from a page."""
    soup = BeautifulSoup(html, "html.parser")

    title = _meta_value(soup, ("og:title",))
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip()

    author = _meta_value(soup, AUTHOR_META_KEYS)
    published = _meta_value(soup, DATE_META_KEYS)

    for tag in soup.find_all(list(STRIP_TAGS)):
        tag.decompose()
    body = soup.body or soup
    text = body.get_text(separator=" ")

    return FetchedContent(
        url=url,
        title=title or fallback_title or url,
        content=web_utils.clean_content(text, max_length=settings.excerpt_max_chars * 4),
        published_date=published,
        author=author,
    )


class WebPageFetcher:
    """Content fetcher for ``web`` sources; ``source.target`` is a URL.

    Individual pages are fetched with a plain GET. When a batch endpoint is
    configured, ``fetch_batch`` posts all URLs in one call.
    """

    def __init__(
        self,
        *,
        batch_endpoint: str | None = None,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
    ):
        self.batch_endpoint = (
            settings.web_batch_endpoint if batch_endpoint is None else batch_endpoint
        ).strip()
        self.api_key = (settings.web_fetch_api_key if api_key is None else api_key).strip()
        self._http_client = http_client
        self.timeout = timeout

    @property
    def supports_batch(self) -> bool:
        return bool(self.batch_endpoint)

    async def fetch_content(self, source: SourceSpec) -> list[FetchedContent]:
        if not web_utils.is_valid_url(source.target):
            raise MalformedResponseError(f"Invalid URL: {source.target}")
        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await self._get(client, source.target)
            else:
                response = await self._get(self._http_client, source.target)
        except Exception as exc:
            raise classify_error(exc) from exc

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or response.text.lstrip().startswith("<"):
            item = parse_html(str(response.url), response.text, fallback_title=source.name)
        else:
            item = FetchedContent(
                url=str(response.url),
                title=source.name,
                content=web_utils.clean_content(response.text, max_length=settings.excerpt_max_chars * 4),
            )
        if not item.content:
            raise MalformedResponseError(f"Empty page content for {source.target}")
        return [item]

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        response = await client.get(url, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        return response

    async def fetch_batch(self, sources: list[SourceSpec]) -> dict[str, list[FetchedContent]]:
        if not self.batch_endpoint:
            raise CapabilityUnavailableError("Batch endpoint not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"urls": [source.target for source in sources], "formats": ["markdown"]}

        try:
            if self._http_client is None:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    data = await self._post_batch(client, payload, headers)
            else:
                data = await self._post_batch(self._http_client, payload, headers)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in UNSUPPORTED_STATUS_CODES:
                raise CapabilityUnavailableError(
                    f"Batch endpoint rejected call: HTTP {exc.response.status_code}"
                ) from exc
            raise classify_error(exc) from exc
        except Exception as exc:
            raise classify_error(exc) from exc

        return self._map_batch_results(sources, data)

    async def _post_batch(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> Any:
        response = await client.post(self.batch_endpoint, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    def _map_batch_results(
        self,
        sources: list[SourceSpec],
        data: Any,
    ) -> dict[str, list[FetchedContent]]:
        body = data.get("data") if isinstance(data, dict) else data
        if not isinstance(body, list):
            raise MalformedResponseError("Batch response missing data list")

        by_url: dict[str, FetchedContent] = {}
        for entry in body:
            if not isinstance(entry, dict):
                continue
            metadata = entry.get("metadata") if isinstance(entry.get("metadata"), dict) else {}
            url = str(entry.get("url") or metadata.get("sourceURL") or "")
            text = str(entry.get("markdown") or entry.get("content") or "")
            if not url or not text.strip():
                continue
            by_url[url] = FetchedContent(
                url=url,
                title=str(metadata.get("title") or url),
                content=web_utils.clean_content(text, max_length=settings.excerpt_max_chars * 4),
                published_date=_optional_str(metadata.get("publishedTime") or metadata.get("publishDate")),
                author=_optional_str(metadata.get("author")),
            )

        mapped: dict[str, list[FetchedContent]] = {}
        for source in sources:
            item = by_url.get(source.target)
            if item is not None:
                mapped[source.name] = [item]
        return mapped

"""PubMed source backed by the NCBI E-utilities API.

Two steps:
    1. esearch - find PMIDs matching the topic (JSON)
    2. efetch  - fetch the article records including abstracts (XML)
"""
from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from urllib.parse import quote

import httpx
from loguru import logger

from researchlens.config import settings
from researchlens.research_core.models.interfaces import FetchedContent, SourceSpec
from researchlens.tools.content_fetcher import (
    CapabilityUnavailableError,
    MalformedResponseError,
    classify_error,
)

PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
PUBMED_SEARCH_URL = "https://pubmed.ncbi.nlm.nih.gov/?term={term}"


def article_url(pmid: str) -> str:
    return PUBMED_ARTICLE_URL.format(pmid=pmid)


def _clean_text(text: str | None) -> str:
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()


def _element_text(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return _clean_text("".join(element.itertext()))


def parse_efetch_xml(
    xml_text: str,
    *,
    abstract_max_chars: int = 800,
) -> list[FetchedContent]:
    """Parse an efetch XML document into fetched items, one per article."""
    root = ET.fromstring(xml_text)
    items: list[FetchedContent] = []

    for article in root.iter("PubmedArticle"):
        pmid = _element_text(article.find(".//PMID"))
        if not pmid:
            continue

        title = _element_text(article.find(".//ArticleTitle")) or f"PubMed Study {pmid}"

        sections: list[str] = []
        for node in article.iter("AbstractText"):
            text = _element_text(node)
            label = node.get("Label")
            if label:
                sections.append(f"{label}: {text}")
            elif text:
                sections.append(text)
        abstract = " ".join(sections)[:abstract_max_chars]

        surnames = [_element_text(node) for node in article.iter("LastName")]
        surnames = [name for name in surnames if name]
        authors = ", ".join(surnames[:3])
        if authors and len(surnames) > 3:
            authors += ", et al."

        journal = _element_text(article.find(".//Journal/Title"))
        year = _element_text(article.find(".//PubDate/Year"))

        items.append(
            FetchedContent(
                url=article_url(pmid),
                title=title,
                content=abstract,
                published_date=year or None,
                author=authors or None,
                metadata={"pmid": pmid, "journal": journal, "year": year, "source": "PubMed"},
            )
        )
    return items


def basic_results(pmids: list[str]) -> list[FetchedContent]:
    """Records carrying only ids and URLs, used when efetch fails."""
    return [
        FetchedContent(
            url=article_url(pmid),
            title=f"PubMed Study {pmid}",
            content="",
            metadata={"pmid": pmid, "source": "PubMed"},
        )
        for pmid in pmids
    ]


def fallback_results(topic: str) -> list[FetchedContent]:
    """A single pointer to run the search directly on PubMed."""
    return [
        FetchedContent(
            url=PUBMED_SEARCH_URL.format(term=quote(topic, safe="")),
            title=f"Search PubMed: {topic}",
            content=f'Click to view latest research on "{topic}" from PubMed.',
            metadata={"source": "PubMed", "fallback": True},
        )
    ]


class PubMedFetcher:
    """Content fetcher for ``pubmed`` sources; ``source.target`` is the topic."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        max_results: int | None = None,
        abstract_max_chars: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or settings.pubmed_base_url).rstrip("/")
        self.max_results = max(int(max_results or settings.pubmed_max_results), 1)
        self.abstract_max_chars = int(abstract_max_chars or settings.pubmed_abstract_max_chars)
        self._http_client = http_client
        self.timeout = timeout

    @property
    def supports_batch(self) -> bool:
        return False

    async def fetch_batch(self, sources: list[SourceSpec]) -> dict[str, list[FetchedContent]]:
        raise CapabilityUnavailableError("PubMed has no batch endpoint")

    async def fetch_content(self, source: SourceSpec) -> list[FetchedContent]:
        if self._http_client is None:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._search(client, source.target)
        return await self._search(self._http_client, source.target)

    async def _search(self, client: httpx.AsyncClient, topic: str) -> list[FetchedContent]:
        pmids = await self._esearch(client, topic)
        if not pmids:
            raise MalformedResponseError(f"No PMIDs found for '{topic}'")
        logger.info(f"Found {len(pmids)} PMIDs for '{topic}': {', '.join(pmids[:3])}")

        try:
            response = await client.get(
                f"{self.base_url}/efetch.fcgi",
                params={"db": "pubmed", "id": ",".join(pmids), "retmode": "xml"},
            )
            response.raise_for_status()
            items = parse_efetch_xml(response.text, abstract_max_chars=self.abstract_max_chars)
        except (httpx.HTTPError, ET.ParseError) as exc:
            logger.warning(f"PubMed efetch failed, returning basic records: {exc}")
            return basic_results(pmids)

        return items or basic_results(pmids)

    async def _esearch(self, client: httpx.AsyncClient, topic: str) -> list[str]:
        try:
            response = await client.get(
                f"{self.base_url}/esearch.fcgi",
                params={
                    "db": "pubmed",
                    "term": topic,
                    "retmax": self.max_results,
                    "retmode": "json",
                    "sort": "relevance",
                },
            )
            response.raise_for_status()
            payload = response.json()
        except Exception as exc:
            raise classify_error(exc) from exc

        if not isinstance(payload, dict):
            raise MalformedResponseError("esearch returned a non-object payload")
        result = payload.get("esearchresult")
        if not isinstance(result, dict):
            raise MalformedResponseError("esearch payload missing esearchresult")
        id_list = result.get("idlist") or []
        return [str(pmid) for pmid in id_list if str(pmid).strip()]

"""NASA ADS (Astrophysics Data System) client.

Search, batched bibcode lookup, BibTeX export and reference/citation
queries against the ADS v1 API, plus a multi-strategy "smart search" for
papers known only by title, first author and year.

API documentation: https://ui.adsabs.harvard.edu/help/api/
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from rapidfuzz.fuzz import token_sort_ratio

from paper_sync.config import SyncConfig
from paper_sync.identifiers import clean_doi, extract_arxiv_id
from paper_sync.models import CitationEdge, RemoteRecord, SearchHints, SourceCapabilities
from paper_sync.sources.base import RemoteLookupClient, RemoteLookupError
from paper_sync.utils import (
    AsyncHttpClient,
    AsyncRateLimiterRegistry,
    DiskCache,
    normalize_title_for_match,
    title_similarity,
)

SERVICE = "ads"
SEARCH_FIELDS = "bibcode,title,author,year,doi,abstract,keyword,pub,identifier,arxiv_class,citation_count"
EDGE_FIELDS = "bibcode,title,author,year,doi,pub,identifier,citation_count"

# Words dropped when building title keyword queries
QUERY_STOPWORDS = frozenset(
    {
        "with",
        "from",
        "that",
        "this",
        "have",
        "been",
        "were",
        "their",
        "which",
        "through",
        "about",
        "using",
        "based",
        "study",
        "analysis",
        "observations",
        "properties",
    }
)

AUTHOR_YEAR_MIN_SIMILARITY = 0.25


# ------------- Record adapters -------------


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _int_or_none(value: Any) -> int | None:
    try:
        return int(str(value)[:4]) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def ads_doc_to_record(doc: dict[str, Any]) -> RemoteRecord:
    """Convert an ADS search document into a RemoteRecord."""
    doi = _first(doc.get("doi"))
    return RemoteRecord(
        source=SERVICE,
        source_id=doc.get("bibcode"),
        bibcode=doc.get("bibcode"),
        doi=clean_doi(doi) if doi else None,
        arxiv_id=extract_arxiv_id(doc.get("identifier") or []),
        title=_first(doc.get("title")) or "Untitled",
        authors=list(doc.get("author") or []),
        year=_int_or_none(doc.get("year")),
        journal=doc.get("pub") or None,
        abstract=doc.get("abstract") or None,
        keywords=list(doc.get("keyword") or []),
        citation_count=doc.get("citation_count") or 0,
    )


def ads_doc_to_edge(doc: dict[str, Any]) -> CitationEdge:
    """Convert an ADS search document into a cached graph edge."""
    doi = _first(doc.get("doi"))
    return CitationEdge(
        title=_first(doc.get("title")) or "",
        authors=list(doc.get("author") or []),
        year=_int_or_none(doc.get("year")),
        journal=doc.get("pub") or None,
        doi=clean_doi(doi) if doi else None,
        arxiv_id=extract_arxiv_id(doc.get("identifier") or []),
        bibcode=doc.get("bibcode"),
        citation_count=doc.get("citation_count"),
    )


# ------------- Smart search strategies -------------


@dataclass
class SearchStrategy:
    name: str
    query: str
    min_similarity: float


def _keywords(title: str, min_len: int, limit: int, stopwords: frozenset[str] = frozenset()) -> str:
    words = re.sub(r"[^\w\s]", " ", title).split()
    kept = [w for w in words if len(w) > min_len and w.lower() not in stopwords]
    return " ".join(kept[:limit])


def build_search_strategies(hints: SearchHints) -> list[SearchStrategy]:
    """Ordered ADS queries for a paper known only by loose metadata.

    Most specific first: exact title phrase, title words with first author
    and year, author and year with distinctive words, author and year
    alone, title words alone.
    """
    title = (hints.title or "").strip()
    author = (hints.first_author or "").strip()
    year = hints.year
    strategies: list[SearchStrategy] = []

    if len(title) > 10:
        clean_title = re.sub(r"[\"“”'‘’]", "", title)
        clean_title = re.sub(r"[:;]", " ", clean_title)
        clean_title = re.sub(r"\s+", " ", clean_title).strip()
        strategies.append(SearchStrategy("exact_title", f'title:"{clean_title}"', 0.5))

    if title:
        terms = _keywords(title, 3, 8, QUERY_STOPWORDS)
        if terms:
            query = f"title:({terms})"
            if author:
                query += f' author:"^{author}"'
            if year:
                query += f" year:{year}"
            strategies.append(SearchStrategy("title_words_author_year", query, 0.4))

    if author and year and title:
        distinctive = _keywords(title, 5, 4)
        if distinctive:
            strategies.append(
                SearchStrategy("author_year_keywords", f'author:"^{author}" year:{year} title:({distinctive})', 0.35)
            )

    if author and year:
        strategies.append(SearchStrategy("author_year_only", f'author:"^{author}" year:{year}', 0.5))

    if len(title) > 20:
        important = _keywords(title, 4, 6)
        if important:
            strategies.append(SearchStrategy("title_words_only", f"title:({important})", 0.55))

    return strategies


@dataclass
class ScoredCandidate:
    doc: dict[str, Any]
    similarity: float
    fuzzy: float
    author_match: bool
    year_match: bool


def score_candidates(docs: list[dict[str, Any]], hints: SearchHints) -> list[ScoredCandidate]:
    """Score search hits against the hints, best first.

    Word-set similarity decides; rapidfuzz token_sort_ratio breaks ties.
    """
    title = hints.title or ""
    norm_title = normalize_title_for_match(title)
    author = (hints.first_author or "").lower()
    scored = []
    for doc in docs:
        doc_title = _first(doc.get("title")) or ""
        first_doc_author = (_first(doc.get("author")) or "").lower()
        scored.append(
            ScoredCandidate(
                doc=doc,
                similarity=title_similarity(title, doc_title),
                fuzzy=token_sort_ratio(norm_title, normalize_title_for_match(doc_title)) if norm_title else 0.0,
                author_match=bool(author) and author in first_doc_author,
                year_match=bool(hints.year) and str(doc.get("year")) == str(hints.year),
            )
        )
    scored.sort(key=lambda c: (c.similarity, c.fuzzy), reverse=True)
    return scored


def accept_candidate(best: ScoredCandidate, strategy: SearchStrategy) -> bool:
    if best.similarity >= strategy.min_similarity:
        return True
    return best.author_match and best.year_match and best.similarity >= AUTHOR_YEAR_MIN_SIMILARITY


# ------------- Client -------------


class AdsClient(RemoteLookupClient):
    """Async ADS API client built on the shared rate-limited HTTP client."""

    name = SERVICE
    capabilities = SourceCapabilities(references=True, citations=True, pdf_download=True, bibtex=True)

    def __init__(
        self,
        token: str | None,
        http: AsyncHttpClient | None = None,
        config: SyncConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            token: ADS API token
            http: Shared AsyncHttpClient; one is created from ``config`` if omitted
            config: Sync settings (base URL, batch size, row limits, timeout)
            logger: Logger instance (creates one if not provided)
        """
        self.token = token
        self.config = config or SyncConfig(ads_token=token)
        self.base_url = self.config.ads_api_url.rstrip("/")
        self.logger = logger or logging.getLogger(__name__)
        if http is None:
            http = AsyncHttpClient(
                AsyncRateLimiterRegistry({SERVICE: self.config.rate_limit}),
                cache=DiskCache(self.config.cache_path) if self.config.cache_path else None,
                timeout=self.config.timeout,
            )
        self.http = http

    @property
    def has_credentials(self) -> bool:
        return bool(self.token)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _check(self, resp: Any, what: str) -> dict[str, Any]:
        if resp.status_code != 200:
            raise RemoteLookupError(f"ADS {what} failed with status {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteLookupError(f"ADS {what} returned invalid JSON") from e

    async def search(
        self,
        query: str,
        fields: str = SEARCH_FIELDS,
        rows: int = 25,
        start: int = 0,
        sort: str = "date desc",
        use_cache: bool = True,
    ) -> list[dict[str, Any]]:
        """Run an ADS search query and return the raw documents.

        Graph queries pass ``use_cache=False`` so a refresh always reaches ADS.

        Raises:
            RemoteLookupError: On a non-200 response
            RuntimeError: On network failure after retries
        """
        params = {"q": query, "fl": fields, "rows": str(rows), "start": str(start), "sort": sort}
        resp = await self.http.get(
            f"{self.base_url}/search/query",
            service=SERVICE,
            params=params,
            headers=self._headers(),
            use_cache=use_cache,
        )
        data = self._check(resp, "search")
        return list((data.get("response") or {}).get("docs") or [])

    async def _search_one(self, query: str) -> RemoteRecord | None:
        docs = await self.search(query, rows=1)
        return ads_doc_to_record(docs[0]) if docs else None

    async def get_by_bibcode(self, bibcode: str) -> RemoteRecord | None:
        return await self._search_one(f'bibcode:"{bibcode.strip()}"')

    async def get_by_doi(self, doi: str) -> RemoteRecord | None:
        return await self._search_one(f'doi:"{doi}"')

    async def get_by_arxiv(self, arxiv_id: str) -> RemoteRecord | None:
        ident = re.sub(r"^arxiv:", "", arxiv_id.strip(), flags=re.IGNORECASE)
        return await self._search_one(f"arxiv:{ident}")

    async def get_by_bibcodes(self, bibcodes: list[str]) -> list[RemoteRecord]:
        """Look up bibcodes in batches joined with OR.

        A failing batch is logged and skipped; if every batch fails the last
        error is raised.
        """
        cleaned = [b.strip() for b in bibcodes if b and b.strip()]
        if not cleaned:
            return []
        size = self.config.bibcode_batch_size
        records: list[RemoteRecord] = []
        last_error: Exception | None = None
        failed_batches = 0
        batches = [cleaned[i : i + size] for i in range(0, len(cleaned), size)]
        for batch in batches:
            query = " OR ".join(f'bibcode:"{b}"' for b in batch)
            try:
                docs = await self.search(query, rows=len(batch))
            except Exception as e:
                failed_batches += 1
                last_error = e
                self.logger.warning("ADS batch lookup failed for %d bibcodes: %s", len(batch), e)
                continue
            self.logger.debug("ADS returned %d results for %d bibcodes", len(docs), len(batch))
            records.extend(ads_doc_to_record(d) for d in docs)
        if last_error is not None and failed_batches == len(batches):
            raise RemoteLookupError(f"ADS batch lookup failed: {last_error}") from last_error
        return records

    async def export_citations(self, bibcodes: list[str]) -> str:
        """BibTeX for the given bibcodes via the export endpoint."""
        if not bibcodes:
            return ""
        resp = await self.http.post(
            f"{self.base_url}/export/bibtex",
            service=SERVICE,
            json_body={"bibcode": list(bibcodes)},
            headers=self._headers(),
        )
        data = self._check(resp, "export")
        return data.get("export") or ""

    async def get_references(self, source_id: str) -> list[CitationEdge]:
        docs = await self.search(
            f'references(bibcode:"{source_id}")',
            fields=EDGE_FIELDS,
            rows=self.config.references_rows,
            use_cache=False,
        )
        return [ads_doc_to_edge(d) for d in docs]

    async def get_citations(self, source_id: str) -> list[CitationEdge]:
        docs = await self.search(
            f'citations(bibcode:"{source_id}")',
            fields=EDGE_FIELDS,
            rows=self.config.citations_rows,
            use_cache=False,
        )
        return [ads_doc_to_edge(d) for d in docs]

    async def smart_search(self, hints: SearchHints) -> RemoteRecord | None:
        """Try each search strategy in order and return the first accepted match.

        A failing strategy is logged and the next one is tried. If nothing
        matched and every attempted strategy failed, the last error is raised.
        """
        strategies = build_search_strategies(hints)
        last_error: Exception | None = None
        failures = 0
        for strategy in strategies:
            self.logger.debug("ADS smart search '%s': %s", strategy.name, strategy.query)
            try:
                docs = await self.search(strategy.query, rows=5, sort="score desc")
            except Exception as e:
                failures += 1
                last_error = e
                self.logger.debug("Strategy '%s' failed: %s", strategy.name, e)
                continue
            if not docs:
                continue
            best = score_candidates(docs, hints)[0]
            if accept_candidate(best, strategy):
                self.logger.debug(
                    "Accepted '%s' via %s (similarity %.2f)",
                    _first(best.doc.get("title")),
                    strategy.name,
                    best.similarity,
                )
                return ads_doc_to_record(best.doc)
        if last_error is not None and failures == len(strategies):
            raise RemoteLookupError(f"ADS smart search failed: {last_error}") from last_error
        return None

    async def close(self) -> None:
        await self.http.close()

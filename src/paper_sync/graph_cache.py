"""Cached reference and citation graphs with a freshness window."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from paper_sync.identifiers import normalize_arxiv_id, normalize_doi
from paper_sync.library import LibraryStore
from paper_sync.models import CachedEdges, CitationEdge, EdgeKind, Paper
from paper_sync.utils import isoformat, parse_timestamp, utc_now

DEFAULT_FRESHNESS_DAYS = 7


def days_since(cached_at: str | datetime | None, now: datetime) -> float | None:
    ts = parse_timestamp(cached_at)
    if ts is None:
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=ts.tzinfo)
    return (now - ts) / timedelta(days=1)


def is_cache_stale(
    cached_at: str | datetime | None,
    now: datetime | None = None,
    freshness_days: float = DEFAULT_FRESHNESS_DAYS,
) -> bool:
    """True when nothing is cached or the cache is older than ``freshness_days``."""
    age = days_since(cached_at, now or utc_now())
    if age is None:
        return True
    return age > freshness_days


def _year_sort_key(indexed: tuple[int, CitationEdge]) -> tuple[tuple[int, int], int]:
    position, edge = indexed
    year = edge.year if isinstance(edge.year, int) else None
    # Newest first; unknown years after all known ones
    return (0 if year is not None else 1, -(year or 0)), position


class CitationGraphCache:
    """Per-paper cache of references (outgoing) and citations (incoming).

    Each refresh replaces the whole edge set of one kind for a paper. Edges
    are linked to local papers by DOI, then arXiv ID, then bibcode.
    """

    def __init__(
        self,
        store: LibraryStore,
        freshness_days: float = DEFAULT_FRESHNESS_DAYS,
        now: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.freshness_days = freshness_days
        self.now = now
        self.logger = logger or logging.getLogger(__name__)

    def _link_for(self, edge: CitationEdge) -> int | None:
        if not edge.has_identifier():
            return None
        if edge.doi:
            found = self.store.get_paper_by_doi(edge.doi)
            if found:
                return found.id
        if edge.arxiv_id:
            found = self.store.get_paper_by_arxiv(edge.arxiv_id)
            if found:
                return found.id
        if edge.bibcode:
            found = self.store.get_paper_by_bibcode(edge.bibcode)
            if found:
                return found.id
        return None

    def _cache(
        self, kind: EdgeKind, paper_id: int, edges: list[CitationEdge], source_plugin: str, flush: bool
    ) -> list[CitationEdge]:
        stamp = isoformat(self.now())
        rows = [
            replace(
                edge,
                authors=list(edge.authors or []),
                source_plugin=source_plugin,
                cached_at=stamp,
                linked_paper_id=self._link_for(edge),
            )
            for edge in edges or []
        ]
        self.store.replace_edges(kind, paper_id, rows, flush=flush)
        self.logger.debug("Cached %d %s for paper %s from %s", len(rows), kind.value, paper_id, source_plugin)
        return rows

    def cache_references(
        self, paper_id: int, edges: list[CitationEdge], source_plugin: str, flush: bool = True
    ) -> list[CitationEdge]:
        """Replace the cached references of a paper."""
        return self._cache(EdgeKind.REFERENCES, paper_id, edges, source_plugin, flush)

    def cache_citations(
        self, paper_id: int, edges: list[CitationEdge], source_plugin: str, flush: bool = True
    ) -> list[CitationEdge]:
        """Replace the cached citations of a paper."""
        return self._cache(EdgeKind.CITATIONS, paper_id, edges, source_plugin, flush)

    def _get(self, kind: EdgeKind, paper_id: int) -> CachedEdges:
        rows = self.store.get_edges(kind, paper_id)
        if not rows:
            return CachedEdges(edges=[], source_plugin=None, cached_at=None, is_stale=True)
        ordered = [edge for _, edge in sorted(enumerate(rows), key=_year_sort_key)]
        first = rows[0]
        return CachedEdges(
            edges=ordered,
            source_plugin=first.source_plugin,
            cached_at=first.cached_at,
            is_stale=self.is_stale(first.cached_at),
        )

    def get_cached_references(self, paper_id: int) -> CachedEdges:
        return self._get(EdgeKind.REFERENCES, paper_id)

    def get_cached_citations(self, paper_id: int) -> CachedEdges:
        return self._get(EdgeKind.CITATIONS, paper_id)

    def is_stale(self, cached_at: str | datetime | None) -> bool:
        return is_cache_stale(cached_at, self.now(), self.freshness_days)

    def needs_refresh(self, paper_id: int, kind: EdgeKind | None = None) -> bool:
        """True when ``kind`` (or, without it, either direction) of the paper's graph is stale."""
        kinds = [kind] if kind is not None else list(EdgeKind)
        return any(self._get(k, paper_id).is_stale for k in kinds)

    def update_library_links(self, paper_id: int, flush: bool = True) -> int:
        """Point cached edges that match a newly added paper at it.

        Returns:
            Number of edges that were linked
        """
        paper = self.store.get_paper(paper_id)
        if paper is None:
            return 0
        linked = 0
        for kind in EdgeKind:
            for _, edge in self.store.iter_edges(kind):
                if _edge_matches(edge, paper):
                    edge.linked_paper_id = paper_id
                    linked += 1
        if linked:
            self.store.mark_dirty(flush=flush)
            self.logger.debug("Linked %d cached edges to paper %s", linked, paper_id)
        return linked


def _edge_matches(edge: CitationEdge, paper: Paper) -> bool:
    if edge.doi and paper.doi and normalize_doi(edge.doi) == normalize_doi(paper.doi):
        return True
    if edge.arxiv_id and paper.arxiv_id and normalize_arxiv_id(edge.arxiv_id) == normalize_arxiv_id(paper.arxiv_id):
        return True
    return bool(edge.bibcode and paper.bibcode and edge.bibcode == paper.bibcode)

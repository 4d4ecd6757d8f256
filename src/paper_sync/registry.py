"""Source registry and cross-source deduplication.

A paper may be known to several external sources (ADS, INSPIRE, arXiv, ...).
The registry keeps one link per (paper, source), resolves incoming
records to existing papers by identifier, and picks the preferred source
for fetching references and citations.

Deduplication order (first hit wins):
1. DOI, case-insensitive
2. arXiv ID, ignoring ``arXiv:`` prefix and version suffix
3. ADS bibcode, exact
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from paper_sync.config import SyncConfig
from paper_sync.library import LibraryStore
from paper_sync.models import (
    DEFAULT_PRIORITY,
    DedupResult,
    Paper,
    PaperSource,
    SourceCapabilities,
)
from paper_sync.utils import isoformat, parse_timestamp, utc_now

if TYPE_CHECKING:
    from paper_sync.graph_cache import CitationGraphCache


def _decode_metadata(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _best_source(sources: list[PaperSource], has_capability: Callable[[PaperSource], bool]) -> PaperSource | None:
    candidates = [s for s in sources if has_capability(s)]
    if not candidates:
        return None
    # sorted() is stable, so ties keep their input order
    return sorted(candidates, key=lambda s: (not s.is_primary, s.priority))[0]


def find_best_source_for_refs(sources: list[PaperSource]) -> PaperSource | None:
    """Preferred reference-capable source: primary first, then lowest priority."""
    return _best_source(sources, lambda s: s.has_references)


def find_best_source_for_cites(sources: list[PaperSource]) -> PaperSource | None:
    """Preferred citation-capable source: primary first, then lowest priority."""
    return _best_source(sources, lambda s: s.has_citations)


class SourceRegistry:
    """Links papers to their external sources and deduplicates imports."""

    def __init__(
        self,
        store: LibraryStore,
        config: SyncConfig | None = None,
        graph_cache: CitationGraphCache | None = None,
        now: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.config = config or SyncConfig()
        self.graph_cache = graph_cache
        self.now = now
        self.logger = logger or logging.getLogger(__name__)

    # ------------- Lookup -------------

    def find_paper_by_doi(self, doi: str | None) -> Paper | None:
        return self.store.get_paper_by_doi(doi)

    def find_paper_by_arxiv(self, arxiv_id: str | None) -> Paper | None:
        return self.store.get_paper_by_arxiv(arxiv_id)

    def find_paper_by_bibcode(self, bibcode: str | None) -> Paper | None:
        return self.store.get_paper_by_bibcode(bibcode)

    def find_existing(self, candidate: Paper) -> tuple[Paper | None, str | None]:
        """Existing paper sharing an identifier with ``candidate``, and the identifier kind."""
        if candidate.doi:
            found = self.find_paper_by_doi(candidate.doi)
            if found:
                return found, "doi"
        if candidate.arxiv_id:
            found = self.find_paper_by_arxiv(candidate.arxiv_id)
            if found:
                return found, "arxiv"
        if candidate.bibcode:
            found = self.find_paper_by_bibcode(candidate.bibcode)
            if found:
                return found, "bibcode"
        return None, None

    # ------------- Source links -------------

    def _resolve_priority(self, source: str, capabilities: SourceCapabilities | None) -> int:
        if capabilities is not None and capabilities.priority is not None:
            return capabilities.priority
        configured = self.config.priority_for(source)
        return configured if configured is not None else DEFAULT_PRIORITY

    def add_paper_source(
        self,
        paper_id: int,
        source: str,
        source_id: str,
        metadata: dict[str, Any] | None = None,
        capabilities: SourceCapabilities | None = None,
        is_primary: bool | None = None,
        flush: bool = True,
    ) -> PaperSource:
        """Create or replace the link between a paper and a source record.

        The link is keyed by (paper_id, source); a link elsewhere that uses
        the same (source, source_id) is replaced as well. With ``is_primary``
        left as None an existing link keeps its primary flag and a new link
        is not primary.
        """
        if is_primary is None:
            current = self.get_link(paper_id, source)
            is_primary = current.is_primary if current else False
        caps = capabilities or SourceCapabilities()
        link = PaperSource(
            paper_id=paper_id,
            source=source,
            source_id=source_id,
            metadata=dict(metadata or {}),
            has_references=caps.references,
            has_citations=caps.citations,
            has_pdf=caps.pdf_download,
            has_bibtex=caps.bibtex,
            priority=self._resolve_priority(source, capabilities),
            last_synced=isoformat(self.now()),
            is_primary=is_primary,
        )
        row = link.to_dict()
        row["metadata"] = json.dumps(link.metadata, default=str)
        self.store.upsert_source_row(row, flush=flush)
        self.logger.debug("Linked paper %s to %s:%s", paper_id, source, source_id)
        return link

    def get_link(self, paper_id: int, source: str) -> PaperSource | None:
        return next((s for s in self.get_paper_sources(paper_id) if s.source == source), None)

    def get_paper_sources(self, paper_id: int) -> list[PaperSource]:
        """All source links of a paper, primary first, then most recently synced."""
        links = []
        for row in self.store.source_rows(paper_id):
            row["metadata"] = _decode_metadata(row.get("metadata"))
            links.append(PaperSource(**row))

        def synced_key(link: PaperSource) -> float:
            ts = parse_timestamp(link.last_synced)
            return -ts.timestamp() if ts else float("inf")

        return sorted(links, key=lambda s: (not s.is_primary, synced_key(s)))

    find_best_source_for_refs = staticmethod(find_best_source_for_refs)
    find_best_source_for_cites = staticmethod(find_best_source_for_cites)

    # ------------- Dedup / import -------------

    def find_or_create_paper(
        self,
        candidate: Paper,
        source: str,
        source_id: str,
        capabilities: SourceCapabilities | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DedupResult:
        """Resolve an incoming record to an existing paper.

        On a hit the source link is upserted (non-primary) and the existing
        paper is returned untouched with ``is_new=False``. On a miss nothing
        is created and ``is_new=True`` tells the caller to create it.
        """
        existing, matched_on = self.find_existing(candidate)
        if existing is None:
            return DedupResult(paper=None, is_new=True)
        self.logger.debug("Import of %s:%s matches paper %s by %s", source, source_id, existing.id, matched_on)
        self.add_paper_source(existing.id, source, source_id, metadata=metadata, capabilities=capabilities)
        return DedupResult(paper=existing, is_new=False)

    def import_paper(
        self,
        candidate: Paper,
        source: str,
        source_id: str,
        capabilities: SourceCapabilities | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> DedupResult:
        """Add a paper to the library unless it is already there.

        New papers get ``source`` as their primary link, and cached graph
        edges elsewhere in the library that point at them are linked.
        """
        result = self.find_or_create_paper(candidate, source, source_id, capabilities, metadata)
        if not result.is_new:
            return result
        paper = self.store.add_paper(candidate)
        self.add_paper_source(paper.id, source, source_id, metadata=metadata, capabilities=capabilities, is_primary=True)
        if self.graph_cache is not None:
            self.graph_cache.update_library_links(paper.id)
        self.logger.info("Imported paper %s from %s:%s", paper.id, source, source_id)
        return DedupResult(paper=paper, is_new=True)
